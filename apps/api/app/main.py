from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.inactivity import InactivityTimeoutMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_audited_event_types = [
    "crm.opportunity.stage_changed",
    "crm.delivery_opportunity.created",
    "payments.instruction.created",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "status": "started"})


def _on_workflow_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    body = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "opportunity_id": body.get("opportunity_id") or body.get("commercial_opportunity_id"),
            "delivery_opportunity_id": body.get("delivery_opportunity_id"),
            "payment_instruction_id": body.get("payment_instruction_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _audited_event_types:
            event_bus.subscribe(event_name, _on_workflow_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


app = FastAPI(title="Progetto CRM API", version="0.1.0", lifespan=lifespan)
# last added runs first: correlation id, then logging, context and the session check
app.add_middleware(InactivityTimeoutMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
