from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
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

authz_denials_total = Counter(
    "authz_denials_total",
    "Authorization denials by reason",
    ["reason"],
)

authz_role_cache_hit_total = Counter(
    "authz_role_cache_hit_total",
    "Role permission cache hits",
)

authz_role_cache_miss_total = Counter(
    "authz_role_cache_miss_total",
    "Role permission cache misses",
)

notification_events_emitted_total = Counter(
    "notification_events_emitted_total",
    "Notification events written",
    ["event_type"],
)

notification_emit_failures_total = Counter(
    "notification_emit_failures_total",
    "Notification events that failed to write",
    ["event_type"],
)

notification_fanout_rows_total = Counter(
    "notification_fanout_rows_total",
    "Inbox rows created by fan-out",
)

notification_fanout_duration_seconds = Histogram(
    "notification_fanout_duration_seconds",
    "Fan-out duration in seconds",
)

notification_live_connections = Gauge(
    "notification_live_connections",
    "Open live notification websockets",
)

push_deliveries_total = Counter(
    "push_deliveries_total",
    "Push delivery attempts by outcome",
    ["outcome"],
)

lead_conversions_total = Counter(
    "lead_conversions_total",
    "Lead conversion requests by outcome",
    ["outcome"],
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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_authz_denial(reason: str) -> None:
    authz_denials_total.labels(reason=reason).inc()


def observe_role_cache_hit() -> None:
    authz_role_cache_hit_total.inc()


def observe_role_cache_miss() -> None:
    authz_role_cache_miss_total.inc()


def observe_notification_emitted(event_type: str) -> None:
    notification_events_emitted_total.labels(event_type=event_type).inc()


def observe_notification_emit_failure(event_type: str) -> None:
    notification_emit_failures_total.labels(event_type=event_type).inc()


def observe_fanout(rows: int, duration: float) -> None:
    if rows > 0:
        notification_fanout_rows_total.inc(rows)
    notification_fanout_duration_seconds.observe(duration)


def observe_live_connections(count: int) -> None:
    notification_live_connections.set(count)


def observe_push_delivery(outcome: str, count: int = 1) -> None:
    if count > 0:
        push_deliveries_total.labels(outcome=outcome).inc(count)


def observe_lead_conversion(outcome: str) -> None:
    lead_conversions_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
