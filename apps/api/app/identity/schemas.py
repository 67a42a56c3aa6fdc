from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


UserRole = Literal["admin", "user"]


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    full_name: str | None
    avatar_url: str | None
    email: str | None
    role: str
    two_factor_enabled: bool
    updated_at: datetime


class ProfileUpdate(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)


class InviteUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    full_name: str | None = Field(default=None, max_length=200)


class InviteUserRead(BaseModel):
    user_id: uuid.UUID | None
    email: str
    invited: bool = True


class RoleUpdateRequest(BaseModel):
    role: str


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    table_name: str
    record_id: str
    action: str
    changed_by: str | None
    old_data: dict[str, Any] | None
    new_data: dict[str, Any] | None
    correlation_id: str | None
    created_at: datetime


class SessionStatusRead(BaseModel):
    user_id: str
    timeout_seconds: int
    last_activity_at: datetime | None
    expires_at: datetime | None
    remaining_seconds: int | None
