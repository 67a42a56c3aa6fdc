from __future__ import annotations

import time
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.identity.session import is_expired
from app.main import app
from app.middleware import inactivity


SECRET = "inactivity-test-secret"
USER_ID = str(uuid.uuid4())


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("SKIP_AUTH", "false")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def revoked(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    calls: list[str] = []

    def fake_revoke(settings, access_token: str) -> None:  # type: ignore[no-untyped-def]
        calls.append(access_token)

    monkeypatch.setattr(inactivity, "_revoke_remote_session", fake_revoke)
    return calls


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(sub: str = USER_ID) -> str:
    now = int(time.time())
    return jwt.encode(
        {"sub": sub, "email": "seller@example.com", "aud": "authenticated", "iat": now, "exp": now + 3600},
        SECRET,
        algorithm="HS256",
    )


def _ms_ago(seconds: int) -> str:
    return str(int(time.time() * 1000) - seconds * 1000)


def _set_cookie_headers(response, name: str) -> list[str]:  # type: ignore[no-untyped-def]
    return [value for value in response.headers.get_list("set-cookie") if value.startswith(f"{name}=")]


def test_active_request_refreshes_activity_cookie(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": f"Bearer {_token()}"})

    assert response.status_code == 200
    assert response.json()["sub"] == USER_ID
    cookies = _set_cookie_headers(response, "last_activity")
    assert len(cookies) == 1
    header = cookies[0]
    assert "Path=/" in header
    assert "Max-Age=604800" in header
    assert "SameSite=lax" in header
    assert "HttpOnly" not in header


def test_session_status_reports_remaining_time(client: TestClient) -> None:
    client.cookies.set("last_activity", _ms_ago(60))

    response = client.get("/api/session", headers={"Authorization": f"Bearer {_token()}"})

    assert response.status_code == 200
    body = response.json()
    assert body["timeout_seconds"] == 1800
    assert 1730 <= body["remaining_seconds"] <= 1740


def test_session_status_poll_does_not_extend_the_session(client: TestClient, revoked: list[str]) -> None:
    headers = {"Authorization": f"Bearer {_token()}"}
    client.cookies.set("last_activity", _ms_ago(600))

    polled = client.get("/api/session", headers=headers)

    assert polled.status_code == 200
    assert _set_cookie_headers(polled, "last_activity") == []

    client.cookies.set("last_activity", _ms_ago(1801))
    expired = client.get("/api/session", headers=headers, follow_redirects=False)

    assert expired.status_code == 307
    assert revoked


def test_heartbeat_resets_the_countdown(client: TestClient) -> None:
    client.cookies.set("last_activity", _ms_ago(600))

    response = client.post("/api/session/heartbeat", headers={"Authorization": f"Bearer {_token()}"})

    assert response.status_code == 200
    assert response.json()["remaining_seconds"] == 1800
    assert _set_cookie_headers(response, "last_activity")


def test_idle_session_is_revoked_and_redirected(client: TestClient, revoked: list[str]) -> None:
    token = _token()
    client.cookies.set("last_activity", _ms_ago(1801))
    client.cookies.set("sb-access-token", token)

    response = client.get("/api/crm/pipelines", follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "/login"
    assert revoked == [token]
    for name in ("last_activity", "sb-access-token"):
        cleared = _set_cookie_headers(response, name)
        assert cleared
        assert "Max-Age=0" in cleared[0]


def test_recent_activity_is_not_expired(client: TestClient, revoked: list[str]) -> None:
    client.cookies.set("last_activity", _ms_ago(1700))

    response = client.get("/api/session", headers={"Authorization": f"Bearer {_token()}"}, follow_redirects=False)

    assert response.status_code == 200
    assert revoked == []


def test_unauthenticated_requests_are_not_redirected(client: TestClient, revoked: list[str]) -> None:
    client.cookies.set("last_activity", _ms_ago(7200))

    response = client.get("/api/session", headers={"Authorization": "Bearer not-a-jwt"}, follow_redirects=False)

    assert response.status_code == 401
    assert revoked == []


def test_exempt_paths_and_skip_auth_bypass_the_check(
    client: TestClient,
    revoked: list[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client.cookies.set("last_activity", _ms_ago(7200))
    headers = {"Authorization": f"Bearer {_token()}"}

    health = client.get("/health", headers=headers, follow_redirects=False)
    assert health.status_code == 200

    monkeypatch.setenv("SKIP_AUTH", "true")
    get_settings.cache_clear()
    skipped = client.get("/api/session", headers=headers, follow_redirects=False)
    assert skipped.status_code == 200
    assert revoked == []


@pytest.mark.parametrize(
    ("idle_ms", "expected"),
    [(1_799_999, False), (1_800_000, False), (1_800_001, True)],
)
def test_timeout_boundary(idle_ms: int, expected: bool) -> None:
    now = 10_000_000_000
    assert is_expired(now - idle_ms, now, 1800) is expected
    assert is_expired(None, now, 1800) is False
