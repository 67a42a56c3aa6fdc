from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.service import ActorUser
from app.identity.client import SupabaseAuthAdminClient
from app.identity.models import Profile
from app.identity.schemas import AuditLogRead, InviteUserRead, ProfileRead
from app.models.audit import AuditLog


logger = logging.getLogger("app.identity")

ALLOWED_ROLES = ("admin", "user")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class UserAdminService:
    def list_users(self, session: Session) -> list[ProfileRead]:
        rows = session.scalars(select(Profile).order_by(Profile.full_name, Profile.email)).all()
        return [ProfileRead.model_validate(row) for row in rows]

    def invite_user(
        self,
        session: Session,
        client: SupabaseAuthAdminClient,
        actor_user: ActorUser,
        *,
        email: str,
        full_name: str | None = None,
        redirect_to: str | None = None,
    ) -> InviteUserRead:
        payload = client.invite_user_by_email(email, redirect_to=redirect_to)
        raw_id = payload.get("id") if isinstance(payload, dict) else None
        try:
            user_id = uuid.UUID(str(raw_id)) if raw_id else None
        except ValueError:
            user_id = None

        if user_id is not None and session.get(Profile, user_id) is None:
            session.add(Profile(id=user_id, email=email, full_name=full_name, role="user"))
            audit.record(
                session,
                table_name=Profile.__tablename__,
                record_id=str(user_id),
                action="INSERT",
                changed_by=actor_user.user_id,
                old_data=None,
                new_data={"email": email, "role": "user"},
                correlation_id=actor_user.correlation_id,
            )
            session.commit()

        logger.info("identity.user_invited", extra={"user_id": str(user_id) if user_id else None})
        events.publish(events.build_envelope("identity.user.invited", actor_user.user_id, {"email": email}))
        return InviteUserRead(user_id=user_id, email=email)

    def delete_user(
        self,
        session: Session,
        client: SupabaseAuthAdminClient,
        actor_user: ActorUser,
        user_id: uuid.UUID,
    ) -> None:
        profile = session.get(Profile, user_id)
        client.delete_user(str(user_id))

        if profile is not None:
            before = {"email": profile.email, "role": profile.role, "full_name": profile.full_name}
            session.delete(profile)
            audit.record(
                session,
                table_name=Profile.__tablename__,
                record_id=str(user_id),
                action="DELETE",
                changed_by=actor_user.user_id,
                old_data=before,
                new_data=None,
                correlation_id=actor_user.correlation_id,
            )
            session.commit()
        events.publish(events.build_envelope("identity.user.deleted", actor_user.user_id, {"user_id": str(user_id)}))

    def update_role(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, role: str) -> ProfileRead:
        if role not in ALLOWED_ROLES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"role must be one of: {', '.join(ALLOWED_ROLES)}",
            )
        profile = session.get(Profile, user_id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")

        before = profile.role
        profile.role = role
        profile.updated_at = utcnow()
        audit.record(
            session,
            table_name=Profile.__tablename__,
            record_id=str(user_id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data={"role": before},
            new_data={"role": role},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ProfileRead.model_validate(profile)

    def list_audit_logs(self, session: Session, *, search: str | None = None, limit: int = 50) -> list[AuditLogRead]:
        stmt = select(AuditLog)
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(AuditLog.table_name).like(pattern),
                    func.lower(AuditLog.action).like(pattern),
                    func.lower(AuditLog.changed_by).like(pattern),
                )
            )
        rows = session.scalars(stmt.order_by(AuditLog.created_at.desc()).limit(limit)).all()
        return [AuditLogRead.model_validate(row) for row in rows]


user_admin_service = UserAdminService()


@dataclass(slots=True)
class ProfileService:
    def get_profile(self, session: Session, actor_user: ActorUser) -> ProfileRead:
        return ProfileRead.model_validate(self._get_own(session, actor_user))

    def update_full_name(self, session: Session, actor_user: ActorUser, full_name: str) -> ProfileRead:
        profile = self._get_own(session, actor_user)
        before = profile.full_name
        profile.full_name = full_name.strip()
        profile.updated_at = utcnow()
        audit.record(
            session,
            table_name=Profile.__tablename__,
            record_id=str(profile.id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data={"full_name": before},
            new_data={"full_name": profile.full_name},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ProfileRead.model_validate(profile)

    @staticmethod
    def _get_own(session: Session, actor_user: ActorUser) -> Profile:
        user_uuid = actor_user.user_uuid
        profile = session.get(Profile, user_uuid) if user_uuid is not None else None
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")
        return profile


profile_service = ProfileService()
