from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from app.context import reset_session_user_id, set_session_user_id
from app.core.auth import decode_access_token, extract_access_token
from app.core.config import Settings, get_settings
from app.identity.client import SupabaseAuthAdminClient
from app.identity.errors import IdentityProviderError
from app.identity.session import idle_seconds, is_expired, now_ms, parse_last_activity
from app.metrics import observe_inactivity_logout


logger = logging.getLogger("app.session")

EXEMPT_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}
# read-only status polls; they check expiry but do not count as activity
PASSIVE_PATHS = {"/api/session"}


def _revoke_remote_session(settings: Settings, access_token: str) -> None:
    if not settings.supabase_url:
        return
    client = SupabaseAuthAdminClient.from_settings(settings)
    client.sign_out(access_token)


class InactivityTimeoutMiddleware(BaseHTTPMiddleware):
    """Ends sessions idle for longer than the configured timeout.

    Activity is tracked in a client-readable cookie so the browser's own
    countdown and the server agree on the same marker.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if settings.skip_auth or path in EXEMPT_PATHS or path.startswith(settings.login_path):
            return await call_next(request)

        access_token = extract_access_token(request, settings)
        claims = decode_access_token(access_token, settings) if access_token else None
        user_id = str(claims["sub"]) if claims and claims.get("sub") else None
        if user_id is None:
            return await call_next(request)

        current = now_ms()
        last_activity = parse_last_activity(request.cookies.get(settings.activity_cookie_name))
        if is_expired(last_activity, current, settings.session_inactivity_timeout_seconds):
            return await self._expire(request, settings, access_token or "", user_id, last_activity, current)

        token = set_session_user_id(user_id)
        try:
            response = await call_next(request)
        finally:
            reset_session_user_id(token)

        if request.method == "GET" and path in PASSIVE_PATHS:
            return response

        response.set_cookie(
            settings.activity_cookie_name,
            str(current),
            max_age=settings.activity_cookie_max_age_seconds,
            path="/",
            httponly=False,
            samesite="lax",
        )
        return response

    async def _expire(
        self,
        request: Request,
        settings: Settings,
        access_token: str,
        user_id: str,
        last_activity: int | None,
        current: int,
    ) -> Response:
        idle = idle_seconds(last_activity, current) if last_activity is not None else None
        try:
            await run_in_threadpool(_revoke_remote_session, settings, access_token)
        except IdentityProviderError as exc:
            logger.warning("session.sign_out_failed", extra={"user_id": user_id, "error": str(exc)})

        observe_inactivity_logout()
        logger.info("session.expired", extra={"user_id": user_id, "idle_seconds": idle, "path": request.url.path})

        response = RedirectResponse(url=settings.login_path, status_code=307)
        response.delete_cookie(settings.activity_cookie_name, path="/")
        response.delete_cookie(settings.session_cookie_name, path="/")
        return response
