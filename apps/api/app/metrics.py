from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Opportunity stage transitions by pipeline and outcome",
    ["pipeline", "outcome"],
)

crm_stage_transition_duration_seconds = Histogram(
    "crm_stage_transition_duration_seconds",
    "Stage transition workflow duration in seconds",
    ["pipeline"],
)

crm_workflow_side_effect_failures_total = Counter(
    "crm_workflow_side_effect_failures_total",
    "Stage transition side effects that failed after the stage was stored",
    ["side_effect"],
)

crm_delivery_opportunities_created_total = Counter(
    "crm_delivery_opportunities_created_total",
    "Delivery opportunities derived from closed_won commercial opportunities",
)

payment_instructions_created_total = Counter(
    "payment_instructions_created_total",
    "Payment instructions created for completed deliveries",
)

session_inactivity_logouts_total = Counter(
    "session_inactivity_logouts_total",
    "Sessions ended by the inactivity timeout",
)

identity_provider_requests_total = Counter(
    "identity_provider_requests_total",
    "Auth admin API calls by operation and outcome",
    ["operation", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path.startswith("/api/crm/pipelines/{slug}"):
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(pipeline: str, outcome: str, duration: float) -> None:
    crm_stage_transitions_total.labels(pipeline=pipeline, outcome=outcome).inc()
    crm_stage_transition_duration_seconds.labels(pipeline=pipeline).observe(duration)


def observe_workflow_side_effect_failure(side_effect: str) -> None:
    crm_workflow_side_effect_failures_total.labels(side_effect=side_effect).inc()


def observe_delivery_opportunity_created() -> None:
    crm_delivery_opportunities_created_total.inc()


def observe_payment_instruction_created() -> None:
    payment_instructions_created_total.inc()


def observe_inactivity_logout() -> None:
    session_inactivity_logouts_total.inc()


def observe_identity_provider_request(operation: str, outcome: str) -> None:
    identity_provider_requests_total.labels(operation=operation, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
