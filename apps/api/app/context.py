from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
session_user_id_var: ContextVar[str | None] = ContextVar("session_user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_session_user_id(value: str | None) -> Token[str | None]:
    return session_user_id_var.set(value)


def reset_session_user_id(token: Token[str | None]) -> None:
    session_user_id_var.reset(token)


def get_session_user_id() -> str | None:
    return session_user_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "user_id": get_session_user_id()}
