from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._emit(request, 500, started, failed=True)
            raise

        self._emit(request, response.status_code, started)
        return response

    @staticmethod
    def _emit(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
        # route is only resolved after the app ran, so the label is read late
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)

        context = getattr(request.state, "context", None)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "user_id": getattr(context, "user_id", None),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
