from __future__ import annotations

from typing import Any, Literal

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog

AuditAction = Literal["INSERT", "UPDATE", "DELETE"]


def record(
    session: Session,
    *,
    table_name: str,
    record_id: str,
    action: AuditAction,
    changed_by: str | None,
    old_data: dict[str, Any] | None,
    new_data: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's session; the caller owns the commit."""
    entry = AuditLog(
        table_name=table_name,
        record_id=record_id,
        action=action,
        changed_by=changed_by,
        old_data=old_data,
        new_data=new_data,
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    return entry
