"""Stage transitions and the records they derive.

A transition stores the new stage first. Everything after that (stage
history, the delivery handoff on ``closed_won``, the payment instruction on
``completed``) runs in its own transaction, and a failure there is reported
in the result's ``warnings`` instead of undoing the move.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.business.payments.service import PaymentsService, payments_service
from app.core.config import get_settings
from app.crm.errors import InvalidStageError, NotFoundError, UpdateError
from app.crm.models import DeliveryOpportunity, Opportunity, OpportunityStageHistory, Pipeline, Stage
from app.crm.schemas import StageTransitionRead
from app.crm.service import (
    CLOSED_STAGE_SLUGS,
    COMMERCIAL,
    DELIVERY,
    ActorUser,
    audit_fields_for,
    pipeline_service,
    resolve_opportunity_model,
    snapshot,
    utcnow,
)
from app.metrics import (
    observe_delivery_opportunity_created,
    observe_stage_transition,
    observe_workflow_side_effect_failure,
)


logger = logging.getLogger("app.crm.workflow")
tracer = trace.get_tracer("app.crm.workflow")

CLOSED_WON_SLUG = "closed_won"
COMPLETED_SLUG = "completed"


@dataclass
class _Outcome:
    history_recorded: bool = False
    delivery_opportunity_id: uuid.UUID | None = None
    payment_instruction_id: uuid.UUID | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StageTransitionService:
    payments: PaymentsService = field(default_factory=lambda: payments_service)

    def update_opportunity_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        new_stage_id: uuid.UUID,
        pipeline_slug: str,
    ) -> StageTransitionRead:
        started = time.perf_counter()
        outcome_label = "failed"
        with tracer.start_as_current_span("crm.opportunity.update_stage") as span:
            span.set_attribute("opportunity_id", str(opportunity_id))
            span.set_attribute("stage_id", str(new_stage_id))
            span.set_attribute("pipeline_slug", pipeline_slug)
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)
            try:
                result = self._transition(session, actor_user, opportunity_id, new_stage_id, pipeline_slug)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            else:
                outcome_label = "partial" if result.warnings else "ok"
                return result
            finally:
                pipeline_label = pipeline_slug if pipeline_slug in {COMMERCIAL, DELIVERY} else "unknown"
                observe_stage_transition(pipeline_label, outcome_label, time.perf_counter() - started)

    def _transition(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        new_stage_id: uuid.UUID,
        pipeline_slug: str,
    ) -> StageTransitionRead:
        model = resolve_opportunity_model(pipeline_slug)

        opportunity = session.scalar(select(model).where(model.id == opportunity_id))
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)

        stage = session.scalar(select(Stage).where(Stage.id == new_stage_id))
        if stage is None:
            raise InvalidStageError("stage not found", details={"stage_id": str(new_stage_id)})
        stage_pipeline = session.get(Pipeline, stage.pipeline_id)
        if stage_pipeline is None or stage_pipeline.slug != pipeline_slug:
            raise InvalidStageError(
                "stage does not belong to the requested pipeline",
                details={"stage_id": str(new_stage_id), "pipeline_slug": pipeline_slug},
            )
        if opportunity.pipeline_id is not None and stage.pipeline_id != opportunity.pipeline_id:
            raise InvalidStageError(
                "stage does not belong to the opportunity's pipeline",
                details={"stage_id": str(new_stage_id), "pipeline_id": str(opportunity.pipeline_id)},
            )

        previous_stage_id = opportunity.stage_id
        before = snapshot(opportunity, audit_fields_for(model))
        now = utcnow()
        values: dict[str, object] = {"stage_id": stage.id, "updated_at": now}
        if model is Opportunity:
            if stage.slug in CLOSED_STAGE_SLUGS:
                values["closed_at"] = opportunity.closed_at or now
            else:
                values["closed_at"] = None

        try:
            session.execute(update(model).where(model.id == opportunity.id).values(**values))
            audit.record(
                session,
                table_name=model.__tablename__,
                record_id=str(opportunity.id),
                action="UPDATE",
                changed_by=actor_user.user_id,
                old_data=before,
                new_data={**before, "stage_id": str(stage.id)},
                correlation_id=actor_user.correlation_id,
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "crm.stage_update_failed",
                extra={"opportunity_id": str(opportunity_id), "stage_id": str(new_stage_id), "error": str(exc)},
            )
            raise UpdateError("could not update opportunity stage", details={"opportunity_id": str(opportunity_id)}) from exc

        logger.info(
            "crm.stage_changed",
            extra={
                "opportunity_id": str(opportunity_id),
                "pipeline_slug": pipeline_slug,
                "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
                "stage_id": str(stage.id),
                "stage_slug": stage.slug,
            },
        )

        outcome = _Outcome()
        if model is Opportunity:
            self._record_history(session, opportunity_id, stage.id, now, outcome)
            if stage.slug == CLOSED_WON_SLUG and get_settings().delivery_handoff_authority == "application":
                self._derive_delivery_opportunity(session, actor_user, opportunity_id, outcome)
        elif stage.slug == COMPLETED_SLUG:
            self._ensure_payment_instruction(session, actor_user, opportunity_id, outcome)

        events.publish(
            events.build_envelope(
                "crm.opportunity.stage_changed",
                actor_user.user_id,
                {
                    "opportunity_id": str(opportunity_id),
                    "pipeline_slug": pipeline_slug,
                    "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
                    "stage_id": str(stage.id),
                    "stage_slug": stage.slug,
                },
            )
        )

        return StageTransitionRead(
            opportunity_id=opportunity_id,
            pipeline_slug=COMMERCIAL if model is Opportunity else DELIVERY,
            previous_stage_id=previous_stage_id,
            stage_id=stage.id,
            stage_slug=stage.slug,
            history_recorded=outcome.history_recorded,
            delivery_opportunity_id=outcome.delivery_opportunity_id,
            payment_instruction_id=outcome.payment_instruction_id,
            warnings=outcome.warnings,
        )

    def _record_history(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        stage_id: uuid.UUID,
        entered_at: datetime,
        outcome: _Outcome,
    ) -> None:
        try:
            session.execute(
                update(OpportunityStageHistory)
                .where(
                    and_(
                        OpportunityStageHistory.opportunity_id == opportunity_id,
                        OpportunityStageHistory.exited_at.is_(None),
                    )
                )
                .values(exited_at=entered_at)
            )
            session.add(OpportunityStageHistory(opportunity_id=opportunity_id, stage_id=stage_id, entered_at=entered_at))
            session.commit()
            outcome.history_recorded = True
        except SQLAlchemyError as exc:
            session.rollback()
            observe_workflow_side_effect_failure("stage_history")
            logger.warning(
                "crm.stage_history_failed",
                extra={"opportunity_id": str(opportunity_id), "side_effect": "stage_history", "error": str(exc)},
            )
            outcome.warnings.append("stage history could not be recorded")

    def _derive_delivery_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        outcome: _Outcome,
    ) -> None:
        try:
            delivery, created = self.ensure_delivery_opportunity(session, actor_user, opportunity_id)
        except (SQLAlchemyError, NotFoundError, InvalidStageError) as exc:
            session.rollback()
            observe_workflow_side_effect_failure("delivery_handoff")
            logger.error(
                "crm.delivery_handoff_failed",
                extra={"opportunity_id": str(opportunity_id), "side_effect": "delivery_handoff", "error": str(exc)},
            )
            outcome.warnings.append("delivery opportunity could not be created")
            return

        outcome.delivery_opportunity_id = delivery.id
        if created:
            observe_delivery_opportunity_created()

    def ensure_delivery_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
    ) -> tuple[DeliveryOpportunity, bool]:
        """Create the delivery-side copy of a won opportunity once.

        Keyed on ``commercial_opportunity_id``; a lost race on the unique
        constraint resolves to the row that won.
        """
        existing = session.scalar(
            select(DeliveryOpportunity).where(DeliveryOpportunity.commercial_opportunity_id == opportunity_id)
        )
        if existing is not None:
            return existing, False

        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)

        pipeline = session.scalar(select(Pipeline).where(Pipeline.slug == DELIVERY))
        if pipeline is None:
            raise NotFoundError("pipeline", DELIVERY)
        stage = pipeline_service.first_stage(session, pipeline.id, get_settings().delivery_initial_stage_slug)
        if stage is None:
            raise InvalidStageError("delivery pipeline has no stages", details={"pipeline_slug": DELIVERY})

        delivery = DeliveryOpportunity(
            commercial_opportunity_id=opportunity.id,
            title=opportunity.title,
            owner_id=opportunity.owner_id,
            account_id=opportunity.account_id,
            primary_contact_id=opportunity.contact_id,
            amount_final=opportunity.amount_final if opportunity.amount_final is not None else opportunity.amount_offered,
            stage_id=stage.id,
            pipeline_id=pipeline.id,
            priority=opportunity.priority or "medium",
            billing_status="pending",
        )
        session.add(delivery)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            winner = session.scalar(
                select(DeliveryOpportunity).where(DeliveryOpportunity.commercial_opportunity_id == opportunity_id)
            )
            if winner is None:
                raise
            return winner, False

        audit.record(
            session,
            table_name=DeliveryOpportunity.__tablename__,
            record_id=str(delivery.id),
            action="INSERT",
            changed_by=actor_user.user_id,
            old_data=None,
            new_data=snapshot(delivery, audit_fields_for(DeliveryOpportunity)),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        logger.info(
            "crm.delivery_opportunity_created",
            extra={"opportunity_id": str(opportunity_id), "delivery_opportunity_id": str(delivery.id)},
        )
        events.publish(
            events.build_envelope(
                "crm.delivery_opportunity.created",
                actor_user.user_id,
                {"delivery_opportunity_id": str(delivery.id), "commercial_opportunity_id": str(opportunity_id)},
            )
        )
        return delivery, True

    def _ensure_payment_instruction(
        self,
        session: Session,
        actor_user: ActorUser,
        delivery_opportunity_id: uuid.UUID,
        outcome: _Outcome,
    ) -> None:
        try:
            delivery = session.get(DeliveryOpportunity, delivery_opportunity_id)
            if delivery is None:
                raise NotFoundError("delivery opportunity", delivery_opportunity_id)
            instruction, _ = self.payments.ensure_payment_instruction(session, delivery, actor_user_id=actor_user.user_id)
        except (SQLAlchemyError, NotFoundError) as exc:
            session.rollback()
            observe_workflow_side_effect_failure("payment_instruction")
            logger.error(
                "payments.instruction_failed",
                extra={
                    "delivery_opportunity_id": str(delivery_opportunity_id),
                    "side_effect": "payment_instruction",
                    "error": str(exc),
                },
            )
            outcome.warnings.append("payment instruction could not be created")
            return

        outcome.payment_instruction_id = instruction.id


stage_transition_service = StageTransitionService()
