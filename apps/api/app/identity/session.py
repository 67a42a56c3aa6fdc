"""Inactivity bookkeeping shared by the middleware and the session endpoints.

The ``last_activity`` cookie holds epoch milliseconds, the format the browser
client writes.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

from app.identity.schemas import SessionStatusRead


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_last_activity(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def idle_seconds(last_activity_ms: int, current_ms: int) -> float:
    return max(0, current_ms - last_activity_ms) / 1000


def is_expired(last_activity_ms: int | None, current_ms: int, timeout_seconds: int) -> bool:
    """True once more than ``timeout_seconds`` passed since the last activity.

    A missing marker never expires a session; the next response sets it.
    """
    if last_activity_ms is None:
        return False
    return current_ms - last_activity_ms > timeout_seconds * 1000


def session_status(user_id: str, last_activity_ms: int | None, current_ms: int, timeout_seconds: int) -> SessionStatusRead:
    if last_activity_ms is None:
        return SessionStatusRead(
            user_id=user_id,
            timeout_seconds=timeout_seconds,
            last_activity_at=None,
            expires_at=None,
            remaining_seconds=None,
        )
    last_activity_at = datetime.fromtimestamp(last_activity_ms / 1000, tz=timezone.utc)
    expires_at = last_activity_at + timedelta(seconds=timeout_seconds)
    remaining = timeout_seconds - int(idle_seconds(last_activity_ms, current_ms))
    return SessionStatusRead(
        user_id=user_id,
        timeout_seconds=timeout_seconds,
        last_activity_at=last_activity_at,
        expires_at=expires_at,
        remaining_seconds=max(0, remaining),
    )
