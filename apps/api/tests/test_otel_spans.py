from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import Pipeline, Stage
from app.crm.seed import seed_default_pipelines
from app.crm.service import ActorUser
from app.main import app
from app.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user-1", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/crm/pipelines", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_stage_transition_span_carries_workflow_attributes(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    created = client.post("/api/crm/opportunities", json={"pipeline_slug": "commercial", "title": "Traced"})
    opportunity_id = created.json()["id"]
    stage_id = db_session.scalar(
        select(Stage.id).join(Pipeline, Stage.pipeline_id == Pipeline.id).where(Pipeline.slug == "commercial", Stage.slug == "measurement")
    )

    response = client.post(
        f"/api/crm/opportunities/{opportunity_id}/change-stage",
        json={"stage_id": str(stage_id), "pipeline_slug": "commercial"},
        headers={"X-Correlation-Id": "otel-stage-1"},
    )
    assert response.status_code == 200

    workflow_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.opportunity.update_stage"]
    assert workflow_spans
    assert any(
        span.attributes.get("opportunity_id") == opportunity_id
        and span.attributes.get("pipeline_slug") == "commercial"
        and span.attributes.get("correlation_id") == "otel-stage-1"
        for span in workflow_spans
    )


def test_failed_transition_marks_span_as_error(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        f"/api/crm/opportunities/{uuid.uuid4()}/change-stage",
        json={"stage_id": str(uuid.uuid4()), "pipeline_slug": "commercial"},
    )
    assert response.status_code == 404

    workflow_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.opportunity.update_stage"]
    assert workflow_spans
    assert not workflow_spans[-1].status.is_ok
