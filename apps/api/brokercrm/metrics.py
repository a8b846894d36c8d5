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

record_mutations_total = Counter(
    "record_mutations_total",
    "Record mutations by entity, operation and outcome",
    ["entity_type", "operation", "outcome"],
)

record_conflicts_total = Counter(
    "record_conflicts_total",
    "Rejected writes by entity and conflict reason",
    ["entity_type", "reason"],
)

backend_errors_total = Counter(
    "backend_errors_total",
    "Storage backend failures",
    ["backend"],
)


_RECORD_ID_RE = re.compile(r"/(?:GKF|ENQ|FEE|NOTE|PRD|SH|user)\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _RECORD_ID_RE.sub("/{id}", path)


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


def observe_mutation(entity_type: str, operation: str, outcome: str) -> None:
    record_mutations_total.labels(entity_type=entity_type, operation=operation, outcome=outcome).inc()


def observe_conflict(entity_type: str, reason: str) -> None:
    record_conflicts_total.labels(entity_type=entity_type, reason=reason).inc()


def observe_backend_error(backend: str) -> None:
    backend_errors_total.labels(backend=backend).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
