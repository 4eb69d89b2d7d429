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

permission_denials_total = Counter(
    "permission_denials_total",
    "Total permission denials by action",
    ["action"],
)

storage_operations_total = Counter(
    "storage_operations_total",
    "Total storage adapter operations",
    ["backend", "operation", "outcome"],
)

storage_transport_errors_total = Counter(
    "storage_transport_errors_total",
    "Total storage transport failures",
    ["backend"],
)

schema_tables_ingested_total = Counter(
    "schema_tables_ingested_total",
    "Total tabular files turned into table schemas",
)

schema_relationships_detected_total = Counter(
    "schema_relationships_detected_total",
    "Total foreign keys detected by relationship resolution",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_permission_denied(action: str) -> None:
    permission_denials_total.labels(action=action).inc()


def observe_storage_operation(backend: str, operation: str, outcome: str = "ok") -> None:
    storage_operations_total.labels(backend=backend, operation=operation, outcome=outcome).inc()


def observe_storage_transport_error(backend: str) -> None:
    storage_transport_errors_total.labels(backend=backend).inc()


def observe_schema_ingested(relationship_count: int = 0) -> None:
    schema_tables_ingested_total.inc()
    if relationship_count > 0:
        schema_relationships_detected_total.inc(relationship_count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
