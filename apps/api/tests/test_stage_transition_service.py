from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.business.payments.models import PaymentInstruction
from app.business.payments.service import PaymentsService
from app.core.config import get_settings
from app.core.database import Base
from app.crm.errors import InvalidPipelineError, InvalidStageError, NotFoundError, UpdateError
from app.crm.models import DeliveryOpportunity, Opportunity, OpportunityStageHistory, Pipeline, Stage
from app.crm.schemas import OpportunityCreate
from app.crm.seed import seed_default_pipelines
from app.crm.service import ActorUser, opportunity_service
from app.crm.workflow import StageTransitionService
from app.models.audit import AuditLog


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    seed_default_pipelines(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("DELIVERY_HANDOFF_AUTHORITY", raising=False)
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=str(uuid.uuid4()), role="user", correlation_id="corr-stage")


@pytest.fixture()
def service() -> StageTransitionService:
    return StageTransitionService()


def _stage(session: Session, pipeline_slug: str, stage_slug: str) -> Stage:
    stage = session.scalar(
        select(Stage).join(Pipeline, Stage.pipeline_id == Pipeline.id).where(Pipeline.slug == pipeline_slug, Stage.slug == stage_slug)
    )
    assert stage is not None
    return stage


def _create(session: Session, actor: ActorUser, pipeline_slug: str, amount: str = "10000") -> uuid.UUID:
    created = opportunity_service.create_opportunity(
        session,
        actor,
        OpportunityCreate(pipeline_slug=pipeline_slug, title=f"{pipeline_slug} kitchen", amount=Decimal(amount)),
    )
    return created.id


def test_stored_stage_matches_target(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    proposal = _stage(db_session, "commercial", "proposal")

    result = service.update_opportunity_stage(db_session, actor, opportunity_id, proposal.id, "commercial")

    assert result.stage_id == proposal.id
    assert result.stage_slug == "proposal"
    assert result.history_recorded is True
    assert result.warnings == []
    stored = db_session.scalar(select(Opportunity.stage_id).where(Opportunity.id == opportunity_id))
    assert stored == proposal.id


def test_transition_closes_previous_history_row(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    briefing = _stage(db_session, "commercial", "briefing")
    measurement = _stage(db_session, "commercial", "measurement")

    service.update_opportunity_stage(db_session, actor, opportunity_id, briefing.id, "commercial")
    service.update_opportunity_stage(db_session, actor, opportunity_id, measurement.id, "commercial")

    rows = db_session.scalars(
        select(OpportunityStageHistory)
        .where(OpportunityStageHistory.opportunity_id == opportunity_id)
        .order_by(OpportunityStageHistory.entered_at, OpportunityStageHistory.id)
    ).all()
    assert len(rows) == 3
    open_rows = [row for row in rows if row.exited_at is None]
    assert len(open_rows) == 1
    assert open_rows[0].stage_id == measurement.id


def test_backward_move_is_allowed_and_clears_closed_at(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    lost = _stage(db_session, "commercial", "closed_lost")
    lead = _stage(db_session, "commercial", "lead")

    service.update_opportunity_stage(db_session, actor, opportunity_id, lost.id, "commercial")
    assert db_session.scalar(select(Opportunity.closed_at).where(Opportunity.id == opportunity_id)) is not None

    result = service.update_opportunity_stage(db_session, actor, opportunity_id, lead.id, "commercial")

    assert result.stage_slug == "lead"
    assert db_session.scalar(select(Opportunity.closed_at).where(Opportunity.id == opportunity_id)) is None


def test_unknown_stage_changes_nothing(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    before = db_session.scalar(select(Opportunity.stage_id).where(Opportunity.id == opportunity_id))
    audit_count = db_session.scalar(select(func.count()).select_from(AuditLog))

    with pytest.raises(InvalidStageError):
        service.update_opportunity_stage(db_session, actor, opportunity_id, uuid.uuid4(), "commercial")

    assert db_session.scalar(select(Opportunity.stage_id).where(Opportunity.id == opportunity_id)) == before
    assert db_session.scalar(select(func.count()).select_from(AuditLog)) == audit_count


def test_stage_from_other_pipeline_is_rejected(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    completed = _stage(db_session, "delivery", "completed")

    with pytest.raises(InvalidStageError):
        service.update_opportunity_stage(db_session, actor, opportunity_id, completed.id, "commercial")

    assert db_session.scalar(select(func.count()).select_from(PaymentInstruction)) == 0


def test_missing_opportunity_has_no_side_effects(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    completed = _stage(db_session, "delivery", "completed")

    with pytest.raises(NotFoundError):
        service.update_opportunity_stage(db_session, actor, uuid.uuid4(), completed.id, "delivery")

    assert db_session.scalar(select(func.count()).select_from(PaymentInstruction)) == 0
    assert not [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]


def test_unknown_pipeline_slug_is_rejected(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    lead = _stage(db_session, "commercial", "lead")

    with pytest.raises(InvalidPipelineError):
        service.update_opportunity_stage(db_session, actor, opportunity_id, lead.id, "installations")


def test_completing_delivery_twice_creates_one_instruction(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
) -> None:
    delivery_id = _create(db_session, actor, "delivery", amount="10000")
    completed = _stage(db_session, "delivery", "completed")
    installation = _stage(db_session, "delivery", "installation")

    first = service.update_opportunity_stage(db_session, actor, delivery_id, completed.id, "delivery")
    service.update_opportunity_stage(db_session, actor, delivery_id, installation.id, "delivery")
    second = service.update_opportunity_stage(db_session, actor, delivery_id, completed.id, "delivery")

    instructions = db_session.scalars(
        select(PaymentInstruction).where(PaymentInstruction.delivery_opportunity_id == delivery_id)
    ).all()
    assert len(instructions) == 1
    assert first.payment_instruction_id == second.payment_instruction_id == instructions[0].id
    assert first.history_recorded is False

    instruction = instructions[0]
    assert instruction.status == "pending"
    assert instruction.seller_amount == Decimal("500.00")
    assert instruction.supplier_amount == Decimal("4000.00")
    assert instruction.installer_amount == Decimal("150.00")
    assert instruction.total_amount == Decimal("4650.00")

    created_events = [item for item in events.published_events if item["event_type"] == "payments.instruction.created"]
    assert len(created_events) == 1


def test_closed_won_leaves_delivery_to_database_by_default(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    won = _stage(db_session, "commercial", "closed_won")

    result = service.update_opportunity_stage(db_session, actor, opportunity_id, won.id, "commercial")

    assert result.delivery_opportunity_id is None
    assert db_session.scalar(select(func.count()).select_from(DeliveryOpportunity)) == 0
    assert db_session.scalar(select(Opportunity.closed_at).where(Opportunity.id == opportunity_id)) is not None


def test_closed_won_derives_delivery_once_when_application_owns_handoff(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DELIVERY_HANDOFF_AUTHORITY", "application")
    get_settings.cache_clear()

    opportunity_id = _create(db_session, actor, "commercial")
    opportunity = db_session.get(Opportunity, opportunity_id)
    assert opportunity is not None
    opportunity.amount_offered = Decimal("8200")
    db_session.commit()

    won = _stage(db_session, "commercial", "closed_won")
    negotiation = _stage(db_session, "commercial", "negotiation")

    first = service.update_opportunity_stage(db_session, actor, opportunity_id, won.id, "commercial")
    service.update_opportunity_stage(db_session, actor, opportunity_id, negotiation.id, "commercial")
    second = service.update_opportunity_stage(db_session, actor, opportunity_id, won.id, "commercial")

    deliveries = db_session.scalars(
        select(DeliveryOpportunity).where(DeliveryOpportunity.commercial_opportunity_id == opportunity_id)
    ).all()
    assert len(deliveries) == 1
    assert first.delivery_opportunity_id == second.delivery_opportunity_id == deliveries[0].id

    delivery = deliveries[0]
    assert delivery.title == "commercial kitchen"
    assert delivery.amount_final == Decimal("8200.00")
    assert delivery.billing_status == "pending"
    assert delivery.stage_id == _stage(db_session, "delivery", "measurement_scheduling").id


def test_history_failure_is_reported_without_undoing_the_move(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    proposal = _stage(db_session, "commercial", "proposal")
    db_session.commit()
    OpportunityStageHistory.__table__.drop(bind=db_session.get_bind())

    result = service.update_opportunity_stage(db_session, actor, opportunity_id, proposal.id, "commercial")

    assert result.history_recorded is False
    assert result.warnings == ["stage history could not be recorded"]
    assert db_session.scalar(select(Opportunity.stage_id).where(Opportunity.id == opportunity_id)) == proposal.id


def test_stage_change_is_audited_and_published(db_session: Session, actor: ActorUser, service: StageTransitionService) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    lead = _stage(db_session, "commercial", "lead")
    negotiation = _stage(db_session, "commercial", "negotiation")

    service.update_opportunity_stage(db_session, actor, opportunity_id, negotiation.id, "commercial")

    audits = db_session.scalars(
        select(AuditLog).where(AuditLog.record_id == str(opportunity_id), AuditLog.action == "UPDATE")
    ).all()
    assert len(audits) == 1
    assert audits[0].old_data["stage_id"] == str(lead.id)
    assert audits[0].new_data["stage_id"] == str(negotiation.id)
    assert audits[0].correlation_id == "corr-stage"

    changed = [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]
    assert changed
    assert changed[-1]["payload"]["stage_slug"] == "negotiation"
    assert changed[-1]["payload"]["previous_stage_id"] == str(lead.id)


def test_stage_from_other_pipeline_is_rejected_when_row_has_no_pipeline(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
) -> None:
    scheduling = _stage(db_session, "delivery", "measurement_scheduling")
    closed_won = _stage(db_session, "commercial", "closed_won")
    delivery = DeliveryOpportunity(title="Detached delivery", stage_id=scheduling.id, pipeline_id=None)
    db_session.add(delivery)
    db_session.commit()

    with pytest.raises(InvalidStageError):
        service.update_opportunity_stage(db_session, actor, delivery.id, closed_won.id, "delivery")

    stored = db_session.scalar(select(DeliveryOpportunity.stage_id).where(DeliveryOpportunity.id == delivery.id))
    assert stored == scheduling.id
    assert not [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]


def test_failed_stage_write_raises_update_error_and_rolls_back(
    db_session: Session,
    actor: ActorUser,
    service: StageTransitionService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    opportunity_id = _create(db_session, actor, "commercial")
    lead = _stage(db_session, "commercial", "lead")
    proposal = _stage(db_session, "commercial", "proposal")
    history_count = db_session.scalar(select(func.count()).select_from(OpportunityStageHistory))

    def failing_record(*args: object, **kwargs: object) -> None:
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

    monkeypatch.setattr(audit, "record", failing_record)

    with pytest.raises(UpdateError):
        service.update_opportunity_stage(db_session, actor, opportunity_id, proposal.id, "commercial")

    monkeypatch.undo()
    assert db_session.scalar(select(Opportunity.stage_id).where(Opportunity.id == opportunity_id)) == lead.id
    assert db_session.scalar(select(func.count()).select_from(OpportunityStageHistory)) == history_count
    updates = db_session.scalars(
        select(AuditLog).where(AuditLog.record_id == str(opportunity_id), AuditLog.action == "UPDATE")
    ).all()
    assert updates == []
    assert not [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]


class _UnavailablePayments(PaymentsService):
    def ensure_payment_instruction(self, session, delivery, *, actor_user_id=None):  # type: ignore[no-untyped-def]
        raise OperationalError("INSERT INTO payment_instructions", {}, Exception("connection reset"))


def test_payment_instruction_failure_is_reported_without_undoing_the_move(
    db_session: Session,
    actor: ActorUser,
) -> None:
    delivery_id = _create(db_session, actor, "delivery", amount="10000")
    completed = _stage(db_session, "delivery", "completed")
    service = StageTransitionService(payments=_UnavailablePayments())

    result = service.update_opportunity_stage(db_session, actor, delivery_id, completed.id, "delivery")

    assert result.stage_slug == "completed"
    assert result.payment_instruction_id is None
    assert result.warnings == ["payment instruction could not be created"]
    stored = db_session.scalar(select(DeliveryOpportunity.stage_id).where(DeliveryOpportunity.id == delivery_id))
    assert stored == completed.id
    assert db_session.scalar(select(func.count()).select_from(PaymentInstruction)) == 0
