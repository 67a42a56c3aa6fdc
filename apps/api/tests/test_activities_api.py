from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.seed import seed_default_pipelines
from app.crm.service import ActorUser
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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=str(uuid.uuid4()), role="user", correlation_id="corr-activity")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_opportunity(client: TestClient, pipeline_slug: str, title: str) -> str:
    response = client.post("/api/crm/opportunities", json={"pipeline_slug": pipeline_slug, "title": title})
    assert response.status_code == 201
    return response.json()["id"]


def test_activity_lifecycle(client: TestClient) -> None:
    opportunity_id = _create_opportunity(client, "commercial", "Living room")

    created = client.post(
        f"/api/crm/opportunities/{opportunity_id}/activities",
        json={"title": "Call back", "type": "call"},
    )
    assert created.status_code == 201
    activity = created.json()
    assert activity["opportunity_id"] == opportunity_id
    assert activity["done_at"] is None

    toggled = client.post(f"/api/crm/activities/{activity['id']}/toggle")
    assert toggled.status_code == 200
    assert toggled.json()["done_at"] is not None

    reopened = client.post(f"/api/crm/activities/{activity['id']}/toggle")
    assert reopened.json()["done_at"] is None

    deleted = client.delete(f"/api/crm/activities/{activity['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/api/crm/opportunities/{opportunity_id}/activities").json() == []


def test_activity_on_delivery_opportunity_uses_delivery_link(client: TestClient) -> None:
    delivery_id = _create_opportunity(client, "delivery", "Install wardrobe")

    created = client.post(
        f"/api/crm/opportunities/{delivery_id}/activities",
        json={"title": "Book installer", "type": "task"},
    )

    assert created.status_code == 201
    assert created.json()["delivery_opportunity_id"] == delivery_id
    assert created.json()["opportunity_id"] is None


def test_activity_for_unknown_opportunity_is_not_found(client: TestClient) -> None:
    response = client.post(f"/api/crm/opportunities/{uuid.uuid4()}/activities", json={"title": "Orphan"})

    assert response.status_code == 404
    assert response.json()["code"] == "crm_activity_create_failed"


def test_activity_list_and_summary_filter_by_pipeline(client: TestClient) -> None:
    commercial_id = _create_opportunity(client, "commercial", "Studio")
    delivery_id = _create_opportunity(client, "delivery", "Studio install")
    past = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
    future = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()

    client.post(f"/api/crm/opportunities/{commercial_id}/activities", json={"title": "Overdue", "due_at": past})
    upcoming = client.post(f"/api/crm/opportunities/{commercial_id}/activities", json={"title": "Upcoming", "due_at": future})
    client.post(f"/api/crm/opportunities/{delivery_id}/activities", json={"title": "Delivery task"})
    client.post(f"/api/crm/activities/{upcoming.json()['id']}/toggle")

    commercial = client.get("/api/crm/activities", params={"pipeline_slug": "commercial"})
    assert commercial.status_code == 200
    assert [item["title"] for item in commercial.json()] == ["Overdue", "Upcoming"]
    assert {item["opportunity_title"] for item in commercial.json()} == {"Studio"}

    summary = client.get("/api/crm/activities/summary")
    assert summary.json() == {"total": 3, "pending": 2, "completed": 1, "overdue": 1}

    invalid = client.get("/api/crm/activities", params={"pipeline_slug": "warehouse"})
    assert invalid.status_code == 422
