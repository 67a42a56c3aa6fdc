from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


PipelineSlug = Literal["commercial", "delivery"]
Priority = Literal["low", "medium", "high"]
OpportunityKind = Literal["commercial", "delivery"]


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    pipeline_id: uuid.UUID
    name: str
    slug: str
    position: int
    probability: int


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    created_at: datetime
    stages: list[StageRead] = Field(default_factory=list)


class BoardCard(BaseModel):
    id: uuid.UUID
    title: str
    amount: Decimal
    priority: str
    stage_id: uuid.UUID | None
    owner_id: uuid.UUID | None
    owner_name: str | None
    updated_at: datetime


class BoardColumn(BaseModel):
    stage: StageRead
    cards: list[BoardCard] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0")


class BoardRead(BaseModel):
    pipeline: PipelineRead
    columns: list[BoardColumn]


class OpportunityCreate(BaseModel):
    pipeline_slug: PipelineSlug
    title: str = Field(min_length=1, max_length=300)
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    priority: Priority = "medium"
    stage_id: uuid.UUID | None = None
    description: str | None = None
    source: str | None = None
    account_id: uuid.UUID | None = None
    contact_id: uuid.UUID | None = None


class OpportunityUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    description: str | None = None
    amount_estimated: Decimal | None = Field(default=None, ge=Decimal("0"))
    amount_offered: Decimal | None = Field(default=None, ge=Decimal("0"))
    amount_final: Decimal | None = Field(default=None, ge=Decimal("0"))
    priority: Priority | None = None


class FormDocument(BaseModel):
    data: dict[str, Any]


class OpportunityRead(BaseModel):
    id: uuid.UUID
    kind: OpportunityKind
    title: str
    description: str | None = None
    amount_estimated: Decimal | None = None
    amount_offered: Decimal | None = None
    amount_final: Decimal | None = None
    priority: str
    source: str | None = None
    status: str | None = None
    stage_id: uuid.UUID | None
    stage_name: str | None = None
    stage_slug: str | None = None
    stage_position: int | None = None
    probability: int | None = None
    pipeline_id: uuid.UUID | None
    pipeline_name: str | None = None
    pipeline_slug: str | None = None
    owner_id: uuid.UUID | None
    owner_name: str | None = None
    account_id: uuid.UUID | None = None
    contact_id: uuid.UUID | None = None
    commercial_opportunity_id: uuid.UUID | None = None
    billing_status: str | None = None
    briefing: dict[str, Any] | None = None
    measurement_data: dict[str, Any] | None = None
    forecast: Decimal
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    proposal_sent_at: datetime | None = None


class StageChangeRequest(BaseModel):
    stage_id: uuid.UUID
    pipeline_slug: str = Field(min_length=1)


class StageTransitionRead(BaseModel):
    opportunity_id: uuid.UUID
    pipeline_slug: PipelineSlug
    previous_stage_id: uuid.UUID | None
    stage_id: uuid.UUID
    stage_slug: str
    history_recorded: bool
    delivery_opportunity_id: uuid.UUID | None = None
    payment_instruction_id: uuid.UUID | None = None
    warnings: list[str] = Field(default_factory=list)


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    stage_id: uuid.UUID | None
    entered_at: datetime
    exited_at: datetime | None


ActivityType = Literal["task", "call", "meeting", "email", "visit", "note"]


class ActivityCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    type: ActivityType = "task"
    due_at: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID | None
    delivery_opportunity_id: uuid.UUID | None
    title: str
    description: str | None
    type: str
    due_at: datetime | None
    done_at: datetime | None
    created_by: uuid.UUID | None
    created_at: datetime
    opportunity_title: str | None = None


class ActivitySummaryRead(BaseModel):
    total: int
    pending: int
    completed: int
    overdue: int


class ProposalCreate(BaseModel):
    total_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    file_path: str | None = None
    file_name: str | None = None
    proposal_link: str | None = None


class ProposalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    version: int
    total_amount: Decimal
    status: str
    file_path: str | None
    file_name: str | None
    proposal_link: str | None
    sent_at: datetime | None
    created_at: datetime
