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

crud_operations_total = Counter(
    "crud_operations_total",
    "Generic CRUD operations by resource, operation and outcome",
    ["resource", "operation", "outcome"],
)

rls_denied_total = Counter(
    "rls_denied_total",
    "Operations denied by the policy registry",
    ["resource", "operation"],
)

policy_evaluation_errors_total = Counter(
    "policy_evaluation_errors_total",
    "Policy predicates or scope lookups that failed and were denied",
    ["resource", "operation"],
)

fls_redacted_fields_total = Counter(
    "fls_redacted_fields_total",
    "Fields removed from documents by field-level redaction",
    ["resource"],
)

system_escalations_total = Counter(
    "system_escalations_total",
    "Operations executed under a synthesized system context",
    ["reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_crud_operation(resource: str, operation: str, outcome: str) -> None:
    crud_operations_total.labels(resource=resource, operation=operation, outcome=outcome).inc()


def observe_rls_denied(resource: str, operation: str) -> None:
    rls_denied_total.labels(resource=resource, operation=operation).inc()


def observe_policy_evaluation_error(resource: str, operation: str) -> None:
    policy_evaluation_errors_total.labels(resource=resource, operation=operation).inc()


def observe_fls_redacted_fields(resource: str, count: int) -> None:
    if count > 0:
        fls_redacted_fields_total.labels(resource=resource).inc(count)


def observe_system_escalation(reason: str) -> None:
    system_escalations_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
