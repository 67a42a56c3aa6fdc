from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import HTTPException, status
from opentelemetry import trace

from app.core.config import Settings, get_settings
from app.identity.errors import IdentityProviderError
from app.metrics import observe_identity_provider_request


logger = logging.getLogger("app.identity.client")
tracer = trace.get_tracer("app.identity.client")


class SupabaseAuthAdminClient:
    """Thin client for the GoTrue endpoints the CRM needs.

    Admin calls authenticate with the service-role key; ``sign_out`` uses the
    caller's own access token.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str | None,
        anon_key: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_role_key = service_role_key
        self._anon_key = anon_key or service_role_key
        self._transport = transport
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> SupabaseAuthAdminClient:
        if not settings.supabase_url:
            raise IdentityProviderError("configure", "SUPABASE_URL is not set")
        return cls(
            settings.supabase_url,
            settings.supabase_service_role_key,
            settings.supabase_anon_key,
            transport=transport,
            timeout=settings.auth_client_timeout_seconds,
        )

    def _admin_headers(self) -> dict[str, str]:
        if not self._service_role_key:
            raise IdentityProviderError("configure", "SUPABASE_SERVICE_ROLE_KEY is not set")
        return {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        headers: dict[str, str],
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        with tracer.start_as_current_span(f"identity.{operation}") as span:
            span.set_attribute("http.method", method)
            try:
                with httpx.Client(base_url=self._base_url, transport=self._transport, timeout=self._timeout) as client:
                    response = client.request(method, path, headers=headers, json=json, params=params)
            except httpx.HTTPError as exc:
                observe_identity_provider_request(operation, "error")
                logger.warning("identity.request_failed", extra={"event_name": operation, "error": str(exc)})
                span.record_exception(exc)
                raise IdentityProviderError(operation, str(exc)) from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.is_error:
                observe_identity_provider_request(operation, "rejected")
                logger.warning(
                    "identity.request_rejected",
                    extra={"event_name": operation, "status_code": response.status_code},
                )
                raise IdentityProviderError(operation, _error_message(response), status_code=response.status_code)

            observe_identity_provider_request(operation, "ok")
            return response

    def invite_user_by_email(self, email: str, *, redirect_to: str | None = None) -> dict[str, Any]:
        params = {"redirect_to": redirect_to} if redirect_to else None
        response = self._request(
            "invite",
            "POST",
            "/auth/v1/invite",
            headers=self._admin_headers(),
            json={"email": email},
            params=params,
        )
        return response.json()

    def delete_user(self, user_id: str) -> None:
        self._request("delete_user", "DELETE", f"/auth/v1/admin/users/{user_id}", headers=self._admin_headers())

    def sign_out(self, access_token: str) -> None:
        headers = {"Authorization": f"Bearer {access_token}"}
        if self._anon_key:
            headers["apikey"] = self._anon_key
        self._request("sign_out", "POST", "/auth/v1/logout", headers=headers)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def get_identity_client() -> SupabaseAuthAdminClient:
    try:
        return SupabaseAuthAdminClient.from_settings(get_settings())
    except IdentityProviderError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
