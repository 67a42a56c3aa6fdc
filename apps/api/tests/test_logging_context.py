from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.context import reset_correlation_id, reset_session_user_id, set_correlation_id, set_session_user_id
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import Pipeline, Stage
from app.crm.seed import seed_default_pipelines
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


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
    yield
    get_settings.cache_clear()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/opportunities/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_stage_change_logs_carry_opportunity_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    created = client.post("/api/crm/opportunities", json={"pipeline_slug": "commercial", "title": "Logged"})
    opportunity_id = created.json()["id"]
    briefing_id = db_session.scalar(
        select(Stage.id).join(Pipeline, Stage.pipeline_id == Pipeline.id).where(Pipeline.slug == "commercial", Stage.slug == "briefing")
    )

    response = client.post(
        f"/api/crm/opportunities/{opportunity_id}/change-stage",
        json={"stage_id": str(briefing_id), "pipeline_slug": "commercial"},
        headers={"X-Correlation-Id": "stage-corr-1"},
    )
    assert response.status_code == 200

    workflow_records = [record for record in caplog.records if record.name == "app.crm.workflow"]
    assert any(
        record.getMessage() == "crm.stage_changed"
        and getattr(record, "opportunity_id", None) == opportunity_id
        and getattr(record, "stage_slug", None) == "briefing"
        and getattr(record, "correlation_id", None) == "stage-corr-1"
        for record in workflow_records
    )


def test_json_formatter_adds_session_user_and_known_fields() -> None:
    correlation_token = set_correlation_id("fmt-corr")
    user_token = set_session_user_id("user-42")
    try:
        record = logging.getLogger("app.test").makeRecord(
            "app.test",
            logging.WARNING,
            __file__,
            1,
            "crm.stage_history_failed",
            (),
            None,
            extra={"side_effect": "stage_history", "error": "x" * 900, "unrelated": "dropped"},
        )
        record.correlation_id = "fmt-corr"
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_session_user_id(user_token)
        reset_correlation_id(correlation_token)

    assert payload["level"] == "WARNING"
    assert payload["correlation_id"] == "fmt-corr"
    assert payload["fields"]["user_id"] == "user-42"
    assert payload["fields"]["side_effect"] == "stage_history"
    assert len(payload["fields"]["error"]) == 500
    assert "unrelated" not in payload["fields"]
