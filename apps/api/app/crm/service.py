from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.errors import InvalidPipelineError, InvalidStageError, NotFoundError, UpdateError
from app.crm.models import (
    Activity,
    DeliveryOpportunity,
    Opportunity,
    OpportunityStageHistory,
    Pipeline,
    Proposal,
    Stage,
)
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivitySummaryRead,
    BoardCard,
    BoardColumn,
    BoardRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    PipelineRead,
    ProposalCreate,
    ProposalRead,
    StageHistoryRead,
    StageRead,
)
from app.identity.models import Profile


COMMERCIAL = "commercial"
DELIVERY = "delivery"
OPPORTUNITY_MODELS: dict[str, type[Opportunity] | type[DeliveryOpportunity]] = {
    COMMERCIAL: Opportunity,
    DELIVERY: DeliveryOpportunity,
}
CLOSED_STAGE_SLUGS = {"closed_won", "closed_lost"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    role: str = "user"
    email: str | None = None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def user_uuid(self) -> uuid.UUID | None:
        try:
            return uuid.UUID(self.user_id)
        except ValueError:
            return None


def resolve_opportunity_model(pipeline_slug: str) -> type[Opportunity] | type[DeliveryOpportunity]:
    model = OPPORTUNITY_MODELS.get(pipeline_slug)
    if model is None:
        raise InvalidPipelineError(
            f"unknown pipeline '{pipeline_slug}'",
            details={"pipeline_slug": pipeline_slug, "allowed": sorted(OPPORTUNITY_MODELS)},
        )
    return model


def display_amount(
    amount_final: Decimal | None,
    amount_offered: Decimal | None = None,
    amount_estimated: Decimal | None = None,
) -> Decimal:
    for value in (amount_final, amount_offered, amount_estimated):
        if value is not None:
            return Decimal(value)
    return Decimal("0")


def weighted_forecast(amount: Decimal, probability: int | None) -> Decimal:
    return (Decimal(amount) * Decimal(probability or 0) / Decimal(100)).quantize(Decimal("0.01"))


def jsonable(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def snapshot(row: Any, fields: Iterable[str]) -> dict[str, Any]:
    return {name: jsonable(getattr(row, name)) for name in fields}


OPPORTUNITY_AUDIT_FIELDS = (
    "title",
    "description",
    "amount_estimated",
    "amount_offered",
    "amount_final",
    "stage_id",
    "pipeline_id",
    "owner_id",
    "priority",
    "status",
)
DELIVERY_AUDIT_FIELDS = (
    "title",
    "commercial_opportunity_id",
    "amount_final",
    "stage_id",
    "pipeline_id",
    "owner_id",
    "priority",
    "billing_status",
)


def audit_fields_for(model: type[Opportunity] | type[DeliveryOpportunity]) -> tuple[str, ...]:
    return OPPORTUNITY_AUDIT_FIELDS if model is Opportunity else DELIVERY_AUDIT_FIELDS


def owner_names(session: Session, owner_ids: Iterable[uuid.UUID | None]) -> dict[uuid.UUID, str | None]:
    ids = {owner_id for owner_id in owner_ids if owner_id is not None}
    if not ids:
        return {}
    rows = session.execute(select(Profile.id, Profile.full_name).where(Profile.id.in_(ids))).all()
    return {row.id: row.full_name for row in rows}


class PipelineService:
    def list_pipelines(self, session: Session) -> list[PipelineRead]:
        rows = session.scalars(select(Pipeline).options(selectinload(Pipeline.stages)).order_by(Pipeline.created_at)).all()
        return [self._to_pipeline_read(row) for row in rows]

    def get_by_slug(self, session: Session, slug: str) -> Pipeline:
        pipeline = session.scalar(select(Pipeline).where(Pipeline.slug == slug).options(selectinload(Pipeline.stages)))
        if pipeline is None:
            raise NotFoundError("pipeline", slug)
        return pipeline

    def get_pipeline(self, session: Session, slug: str) -> PipelineRead:
        return self._to_pipeline_read(self.get_by_slug(session, slug))

    def first_stage(self, session: Session, pipeline_id: uuid.UUID, preferred_slug: str | None = None) -> Stage | None:
        if preferred_slug:
            stage = session.scalar(select(Stage).where(and_(Stage.pipeline_id == pipeline_id, Stage.slug == preferred_slug)))
            if stage is not None:
                return stage
        return session.scalar(select(Stage).where(Stage.pipeline_id == pipeline_id).order_by(Stage.position).limit(1))

    def get_board(self, session: Session, slug: str, *, search: str | None = None) -> BoardRead:
        model = resolve_opportunity_model(slug)
        pipeline = self.get_by_slug(session, slug)

        stmt = select(model).where(model.pipeline_id == pipeline.id)
        if search:
            stmt = stmt.where(model.title.ilike(f"%{search.strip()}%"))
        rows = session.scalars(stmt.order_by(model.updated_at.desc())).all()
        names = owner_names(session, (row.owner_id for row in rows))

        columns: dict[uuid.UUID, BoardColumn] = {
            stage.id: BoardColumn(stage=StageRead.model_validate(stage)) for stage in pipeline.stages
        }
        for row in rows:
            column = columns.get(row.stage_id) if row.stage_id else None
            if column is None:
                continue
            if model is Opportunity:
                amount = display_amount(row.amount_final, row.amount_offered, row.amount_estimated)
            else:
                amount = display_amount(row.amount_final)
            column.cards.append(
                BoardCard(
                    id=row.id,
                    title=row.title,
                    amount=amount,
                    priority=row.priority or "medium",
                    stage_id=row.stage_id,
                    owner_id=row.owner_id,
                    owner_name=names.get(row.owner_id) if row.owner_id else None,
                    updated_at=row.updated_at,
                )
            )
            column.total_amount += amount

        return BoardRead(pipeline=self._to_pipeline_read(pipeline), columns=list(columns.values()))

    @staticmethod
    def _to_pipeline_read(pipeline: Pipeline) -> PipelineRead:
        return PipelineRead(
            id=pipeline.id,
            name=pipeline.name,
            slug=pipeline.slug,
            created_at=pipeline.created_at,
            stages=[StageRead.model_validate(stage) for stage in sorted(pipeline.stages, key=lambda item: item.position)],
        )


pipeline_service = PipelineService()


class OpportunityService:
    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        model = resolve_opportunity_model(dto.pipeline_slug)
        pipeline = pipeline_service.get_by_slug(session, dto.pipeline_slug)

        if dto.stage_id is not None:
            stage = session.scalar(select(Stage).where(Stage.id == dto.stage_id))
            if stage is None or stage.pipeline_id != pipeline.id:
                raise InvalidStageError("stage does not belong to pipeline", details={"stage_id": str(dto.stage_id)})
        else:
            stage = pipeline_service.first_stage(session, pipeline.id)
            if stage is None:
                raise InvalidStageError("pipeline has no stages", details={"pipeline_slug": dto.pipeline_slug})

        if model is Opportunity:
            row: Opportunity | DeliveryOpportunity = Opportunity(
                title=dto.title.strip(),
                description=dto.description,
                amount_estimated=dto.amount,
                stage_id=stage.id,
                pipeline_id=pipeline.id,
                owner_id=actor_user.user_uuid,
                account_id=dto.account_id,
                contact_id=dto.contact_id,
                priority=dto.priority,
                source=dto.source,
            )
        else:
            row = DeliveryOpportunity(
                title=dto.title.strip(),
                amount_final=dto.amount,
                stage_id=stage.id,
                pipeline_id=pipeline.id,
                owner_id=actor_user.user_uuid,
                account_id=dto.account_id,
                primary_contact_id=dto.contact_id,
                priority=dto.priority,
            )
        session.add(row)
        session.flush()

        if isinstance(row, Opportunity):
            session.add(OpportunityStageHistory(opportunity_id=row.id, stage_id=stage.id, entered_at=row.created_at))

        audit.record(
            session,
            table_name=model.__tablename__,
            record_id=str(row.id),
            action="INSERT",
            changed_by=actor_user.user_id,
            old_data=None,
            new_data=snapshot(row, audit_fields_for(model)),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        events.publish(
            events.build_envelope(
                "crm.opportunity.created",
                actor_user.user_id,
                {"opportunity_id": str(row.id), "pipeline_slug": dto.pipeline_slug, "stage_id": str(stage.id)},
            )
        )
        return self.get_opportunity(session, row.id)

    def find(self, session: Session, opportunity_id: uuid.UUID) -> Opportunity | DeliveryOpportunity | None:
        commercial = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
        if commercial is not None:
            return commercial
        return session.scalar(select(DeliveryOpportunity).where(DeliveryOpportunity.id == opportunity_id))

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        row = self.find(session, opportunity_id)
        if row is None:
            raise NotFoundError("opportunity", opportunity_id)
        return self._to_read(session, row)

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_commercial(session, opportunity_id)
        before = snapshot(opportunity, OPPORTUNITY_AUDIT_FIELDS)

        changes = dto.model_dump(exclude_unset=True)
        if "title" in changes and changes["title"] is not None:
            changes["title"] = changes["title"].strip()
        for field_name, value in changes.items():
            setattr(opportunity, field_name, value)
        opportunity.updated_at = utcnow()

        audit.record(
            session,
            table_name=Opportunity.__tablename__,
            record_id=str(opportunity.id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data=before,
            new_data=snapshot(opportunity, OPPORTUNITY_AUDIT_FIELDS),
            correlation_id=actor_user.correlation_id,
        )
        self._commit(session)
        return self.get_opportunity(session, opportunity.id)

    def save_briefing(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        data: dict[str, Any],
    ) -> OpportunityRead:
        return self._save_document(session, actor_user, opportunity_id, "briefing", data)

    def save_measurement(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        data: dict[str, Any],
    ) -> OpportunityRead:
        return self._save_document(session, actor_user, opportunity_id, "measurement_data", data)

    def delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        row = self.find(session, opportunity_id)
        if row is None:
            raise NotFoundError("opportunity", opportunity_id)
        model = type(row)
        before = snapshot(row, audit_fields_for(model))

        session.delete(row)
        audit.record(
            session,
            table_name=model.__tablename__,
            record_id=str(opportunity_id),
            action="DELETE",
            changed_by=actor_user.user_id,
            old_data=before,
            new_data=None,
            correlation_id=actor_user.correlation_id,
        )
        self._commit(session)
        events.publish(
            events.build_envelope(
                "crm.opportunity.deleted",
                actor_user.user_id,
                {"opportunity_id": str(opportunity_id), "table": model.__tablename__},
            )
        )

    def list_stage_history(self, session: Session, opportunity_id: uuid.UUID) -> list[StageHistoryRead]:
        self._get_commercial(session, opportunity_id)
        rows = session.scalars(
            select(OpportunityStageHistory)
            .where(OpportunityStageHistory.opportunity_id == opportunity_id)
            .order_by(OpportunityStageHistory.entered_at, OpportunityStageHistory.id)
        ).all()
        return [StageHistoryRead.model_validate(row) for row in rows]

    def _save_document(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        field_name: str,
        data: dict[str, Any],
    ) -> OpportunityRead:
        opportunity = self._get_commercial(session, opportunity_id)
        before = getattr(opportunity, field_name)
        setattr(opportunity, field_name, data)
        opportunity.updated_at = utcnow()
        audit.record(
            session,
            table_name=Opportunity.__tablename__,
            record_id=str(opportunity.id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data={field_name: before},
            new_data={field_name: data},
            correlation_id=actor_user.correlation_id,
        )
        self._commit(session)
        return self.get_opportunity(session, opportunity.id)

    @staticmethod
    def _get_commercial(session: Session, opportunity_id: uuid.UUID) -> Opportunity:
        opportunity = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return opportunity

    @staticmethod
    def _commit(session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise UpdateError("could not save opportunity", details={"error": str(exc)[:500]}) from exc

    def _to_read(self, session: Session, row: Opportunity | DeliveryOpportunity) -> OpportunityRead:
        stage = session.get(Stage, row.stage_id) if row.stage_id else None
        pipeline = session.get(Pipeline, row.pipeline_id) if row.pipeline_id else None
        names = owner_names(session, [row.owner_id])
        probability = stage.probability if stage is not None else None

        payload: dict[str, Any] = {
            "id": row.id,
            "title": row.title,
            "amount_final": row.amount_final,
            "priority": row.priority or "medium",
            "stage_id": row.stage_id,
            "stage_name": stage.name if stage else None,
            "stage_slug": stage.slug if stage else None,
            "stage_position": stage.position if stage else None,
            "probability": probability,
            "pipeline_id": row.pipeline_id,
            "pipeline_name": pipeline.name if pipeline else None,
            "pipeline_slug": pipeline.slug if pipeline else None,
            "owner_id": row.owner_id,
            "owner_name": names.get(row.owner_id) if row.owner_id else None,
            "account_id": row.account_id,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
        if isinstance(row, Opportunity):
            amount = display_amount(row.amount_final, row.amount_offered, row.amount_estimated)
            payload.update(
                kind=COMMERCIAL,
                description=row.description,
                amount_estimated=row.amount_estimated,
                amount_offered=row.amount_offered,
                source=row.source,
                status=row.status,
                contact_id=row.contact_id,
                briefing=row.briefing,
                measurement_data=row.measurement_data,
                closed_at=row.closed_at,
                proposal_sent_at=row.proposal_sent_at,
            )
        else:
            amount = display_amount(row.amount_final)
            payload.update(
                kind=DELIVERY,
                contact_id=row.primary_contact_id,
                commercial_opportunity_id=row.commercial_opportunity_id,
                billing_status=row.billing_status,
            )
        payload["forecast"] = weighted_forecast(amount, probability)
        return OpportunityRead(**payload)


opportunity_service = OpportunityService()


class ActivityService:
    def list_for_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> list[ActivityRead]:
        if opportunity_service.find(session, opportunity_id) is None:
            raise NotFoundError("opportunity", opportunity_id)
        rows = session.scalars(
            select(Activity)
            .where(or_(Activity.opportunity_id == opportunity_id, Activity.delivery_opportunity_id == opportunity_id))
            .order_by(Activity.due_at.is_(None), Activity.due_at, Activity.created_at)
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        parent = opportunity_service.find(session, opportunity_id)
        if parent is None:
            raise NotFoundError("opportunity", opportunity_id)

        activity = Activity(
            title=dto.title.strip(),
            description=dto.description,
            type=dto.type,
            due_at=dto.due_at,
            created_by=actor_user.user_uuid,
        )
        if isinstance(parent, Opportunity):
            activity.opportunity_id = parent.id
        else:
            activity.delivery_opportunity_id = parent.id
        session.add(activity)
        session.flush()

        audit.record(
            session,
            table_name=Activity.__tablename__,
            record_id=str(activity.id),
            action="INSERT",
            changed_by=actor_user.user_id,
            old_data=None,
            new_data=snapshot(activity, ("title", "type", "due_at", "opportunity_id", "delivery_opportunity_id")),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ActivityRead.model_validate(activity)

    def toggle_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> ActivityRead:
        activity = self._get(session, activity_id)
        before = snapshot(activity, ("done_at",))
        activity.done_at = None if activity.done_at is not None else utcnow()
        audit.record(
            session,
            table_name=Activity.__tablename__,
            record_id=str(activity.id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data=before,
            new_data=snapshot(activity, ("done_at",)),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ActivityRead.model_validate(activity)

    def delete_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        activity = self._get(session, activity_id)
        before = snapshot(activity, ("title", "type", "due_at", "done_at"))
        session.delete(activity)
        audit.record(
            session,
            table_name=Activity.__tablename__,
            record_id=str(activity_id),
            action="DELETE",
            changed_by=actor_user.user_id,
            old_data=before,
            new_data=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def list_activities(self, session: Session, *, pipeline_slug: str | None = None) -> list[ActivityRead]:
        if pipeline_slug is not None:
            resolve_opportunity_model(pipeline_slug)

        stmt: Select[Any] = (
            select(Activity, Opportunity.title, DeliveryOpportunity.title)
            .outerjoin(Opportunity, Activity.opportunity_id == Opportunity.id)
            .outerjoin(DeliveryOpportunity, Activity.delivery_opportunity_id == DeliveryOpportunity.id)
        )
        if pipeline_slug == COMMERCIAL:
            stmt = stmt.where(Opportunity.id.is_not(None))
        elif pipeline_slug == DELIVERY:
            stmt = stmt.where(DeliveryOpportunity.id.is_not(None))

        rows = session.execute(stmt.order_by(Activity.due_at.is_(None), Activity.due_at, Activity.created_at)).all()
        result: list[ActivityRead] = []
        for activity, commercial_title, delivery_title in rows:
            item = ActivityRead.model_validate(activity)
            item.opportunity_title = commercial_title or delivery_title
            result.append(item)
        return result

    def summary(
        self,
        session: Session,
        *,
        pipeline_slug: str | None = None,
        now: datetime | None = None,
    ) -> ActivitySummaryRead:
        reference = now or utcnow()
        items = self.list_activities(session, pipeline_slug=pipeline_slug)
        pending = [item for item in items if item.done_at is None]
        overdue = [item for item in pending if item.due_at is not None and _aware(item.due_at) < reference]
        return ActivitySummaryRead(
            total=len(items),
            pending=len(pending),
            completed=len(items) - len(pending),
            overdue=len(overdue),
        )

    @staticmethod
    def _get(session: Session, activity_id: uuid.UUID) -> Activity:
        activity = session.scalar(select(Activity).where(Activity.id == activity_id))
        if activity is None:
            raise NotFoundError("activity", activity_id)
        return activity


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


activity_service = ActivityService()


class ProposalService:
    def list_proposals(self, session: Session, opportunity_id: uuid.UUID) -> list[ProposalRead]:
        rows = session.scalars(
            select(Proposal).where(Proposal.opportunity_id == opportunity_id).order_by(Proposal.version.desc())
        ).all()
        return [ProposalRead.model_validate(row) for row in rows]

    def create_proposal(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: ProposalCreate,
    ) -> ProposalRead:
        opportunity = session.scalar(select(Opportunity).where(Opportunity.id == opportunity_id))
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)

        latest = session.scalar(select(func.max(Proposal.version)).where(Proposal.opportunity_id == opportunity_id))
        proposal = Proposal(
            opportunity_id=opportunity_id,
            version=(latest or 0) + 1,
            total_amount=dto.total_amount,
            status="draft",
            file_path=dto.file_path,
            file_name=dto.file_name,
            proposal_link=dto.proposal_link,
        )
        session.add(proposal)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise UpdateError(
                "proposal version already exists",
                details={"opportunity_id": str(opportunity_id), "version": (latest or 0) + 1},
            ) from exc

        audit.record(
            session,
            table_name=Proposal.__tablename__,
            record_id=str(proposal.id),
            action="INSERT",
            changed_by=actor_user.user_id,
            old_data=None,
            new_data=snapshot(proposal, ("opportunity_id", "version", "total_amount", "status")),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ProposalRead.model_validate(proposal)

    def send_proposal(self, session: Session, actor_user: ActorUser, proposal_id: uuid.UUID) -> ProposalRead:
        proposal = session.scalar(select(Proposal).where(Proposal.id == proposal_id))
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)

        sent_at = utcnow()
        proposal.status = "sent"
        proposal.sent_at = sent_at
        opportunity = session.get(Opportunity, proposal.opportunity_id)
        if opportunity is not None:
            opportunity.proposal_sent_at = sent_at
            opportunity.updated_at = sent_at

        audit.record(
            session,
            table_name=Proposal.__tablename__,
            record_id=str(proposal.id),
            action="UPDATE",
            changed_by=actor_user.user_id,
            old_data={"status": "draft"},
            new_data={"status": "sent", "sent_at": sent_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        events.publish(
            events.build_envelope(
                "crm.proposal.sent",
                actor_user.user_id,
                {"proposal_id": str(proposal.id), "opportunity_id": str(proposal.opportunity_id), "version": proposal.version},
            )
        )
        return ProposalRead.model_validate(proposal)


proposal_service = ProposalService()
