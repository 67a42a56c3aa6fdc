from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.seed import DEFAULT_PIPELINES, seed_default_pipelines
from app.crm.service import ActorUser
from app.identity.models import Profile
from app.main import app


OWNER_ID = uuid.uuid4()


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
    session.add(Profile(id=OWNER_ID, full_name="Giulia Rossi", email="giulia@example.com", role="user"))
    session.commit()
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
        return ActorUser(user_id=str(OWNER_ID), role="user", correlation_id="corr-board")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_seed_is_idempotent(db_session: Session) -> None:
    seeded = seed_default_pipelines(db_session)

    assert set(seeded) == {"commercial", "delivery"}
    assert len(seeded["commercial"].stages) == len(DEFAULT_PIPELINES["commercial"][1])


def test_list_pipelines_returns_ordered_stages(client: TestClient) -> None:
    response = client.get("/api/crm/pipelines")

    assert response.status_code == 200
    by_slug = {item["slug"]: item for item in response.json()}
    assert [stage["slug"] for stage in by_slug["commercial"]["stages"]] == [
        "lead",
        "briefing",
        "measurement",
        "proposal",
        "negotiation",
        "closed_won",
        "closed_lost",
    ]
    assert [stage["probability"] for stage in by_slug["commercial"]["stages"]] == [10, 20, 40, 60, 80, 100, 0]
    assert by_slug["delivery"]["stages"][-1]["slug"] == "completed"


def test_unknown_pipeline_is_not_found(client: TestClient) -> None:
    response = client.get("/api/crm/pipelines/warehouse")

    assert response.status_code == 404
    assert response.json()["code"] == "crm_pipeline_get_failed"


def test_board_groups_cards_by_stage_with_totals(client: TestClient) -> None:
    for title, amount in (("Kitchen Verdi", 10000), ("Kitchen Bianchi", 2500), ("Wardrobe Neri", 800)):
        created = client.post(
            "/api/crm/opportunities",
            json={"pipeline_slug": "commercial", "title": title, "amount": amount},
        )
        assert created.status_code == 201

    board = client.get("/api/crm/pipelines/commercial/board")

    assert board.status_code == 200
    columns = {column["stage"]["slug"]: column for column in board.json()["columns"]}
    assert list(columns)[0] == "lead"
    lead = columns["lead"]
    assert len(lead["cards"]) == 3
    assert Decimal(lead["total_amount"]) == Decimal("13300")
    assert {card["owner_name"] for card in lead["cards"]} == {"Giulia Rossi"}
    assert columns["proposal"]["cards"] == []

    searched = client.get("/api/crm/pipelines/commercial/board", params={"search": "kitchen"})
    titles = [card["title"] for column in searched.json()["columns"] for card in column["cards"]]
    assert sorted(titles) == ["Kitchen Bianchi", "Kitchen Verdi"]
