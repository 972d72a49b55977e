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

crm_operations_total = Counter(
    "crm_operations_total",
    "Total CRM service operations by outcome",
    ["operation", "outcome"],
)

crm_operation_duration_seconds = Histogram(
    "crm_operation_duration_seconds",
    "CRM service operation duration in seconds",
    ["operation"],
)

crm_insights_generated_total = Counter(
    "crm_insights_generated_total",
    "Total generated AI insights by type",
    ["insight_type"],
)

crm_actions_generated_total = Counter(
    "crm_actions_generated_total",
    "Total generated next best actions by type",
    ["action_type"],
)

tenant_isolation_denied_total = Counter(
    "tenant_isolation_denied_total",
    "Total rows rejected by the tenant isolation check",
    ["resource"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
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


def observe_operation(operation: str, outcome: str) -> None:
    crm_operations_total.labels(operation=operation, outcome=outcome).inc()


def observe_insight_generated(insight_type: str) -> None:
    crm_insights_generated_total.labels(insight_type=insight_type).inc()


def observe_action_generated(action_type: str) -> None:
    crm_actions_generated_total.labels(action_type=action_type).inc()


def observe_tenant_isolation_denied(resource: str) -> None:
    tenant_isolation_denied_total.labels(resource=resource).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
