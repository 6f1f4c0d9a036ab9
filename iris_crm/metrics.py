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

iris_lead_status_transitions_total = Counter(
    "iris_lead_status_transitions_total",
    "Lead status transition attempts by target status and outcome",
    ["new_status", "outcome"],
)

iris_lead_conversions_total = Counter(
    "iris_lead_conversions_total",
    "Lead to account conversions by outcome",
    ["outcome"],
)

iris_conversion_reversals_total = Counter(
    "iris_conversion_reversals_total",
    "Account to lead conversion reversals by outcome",
    ["outcome"],
)

iris_lead_assignments_total = Counter(
    "iris_lead_assignments_total",
    "Leads reassigned through bulk assignment",
)

iris_advice_requests_total = Counter(
    "iris_advice_requests_total",
    "Advice requests by source",
    ["source"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    route_path = getattr(route, "path", None) if route is not None else None
    if isinstance(route_path, str) and route_path:
        return _PATH_PARAM_RE.sub("{id}", route_path)
    return _UUID_RE.sub("{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_status_transition(new_status: str, outcome: str) -> None:
    iris_lead_status_transitions_total.labels(new_status=new_status, outcome=outcome).inc()


def observe_lead_conversion(outcome: str) -> None:
    iris_lead_conversions_total.labels(outcome=outcome).inc()


def observe_conversion_reversal(outcome: str) -> None:
    iris_conversion_reversals_total.labels(outcome=outcome).inc()


def observe_lead_assignments(count: int) -> None:
    if count > 0:
        iris_lead_assignments_total.inc(count)


def observe_advice_request(source: str) -> None:
    iris_advice_requests_total.labels(source=source).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
