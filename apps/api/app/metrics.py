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

analytics_cache_hits_total = Counter(
    "analytics_cache_hits_total",
    "Analytics cache hits",
    ["function_id", "tag"],
)

analytics_cache_misses_total = Counter(
    "analytics_cache_misses_total",
    "Analytics cache misses",
    ["function_id", "tag"],
)

analytics_cache_write_skipped_total = Counter(
    "analytics_cache_write_skipped_total",
    "Analytics cache writes skipped by reason",
    ["function_id", "reason"],
)

analytics_cache_invalidations_total = Counter(
    "analytics_cache_invalidations_total",
    "Analytics cache tag invalidations",
    ["tag", "source"],
)

analytics_query_duration_seconds = Histogram(
    "analytics_query_duration_seconds",
    "Analytical query duration on cache miss",
    ["function_id"],
)

refresh_triggers_total = Counter(
    "refresh_triggers_total",
    "Data refresh trigger attempts by source and outcome",
    ["source", "outcome"],
)

refresh_runs_finished_total = Counter(
    "refresh_runs_finished_total",
    "Data refresh runs reaching a terminal state",
    ["state"],
)

authz_denied_total = Counter(
    "authz_denied_total",
    "Authorization guard denials",
    ["guard", "role"],
)

anonymized_fields_count = Counter(
    "anonymized_fields_count",
    "Identity fields masked for restricted principals",
    ["resource"],
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


def observe_cache_hit(function_id: str, tag: str) -> None:
    analytics_cache_hits_total.labels(function_id=function_id, tag=tag).inc()


def observe_cache_miss(function_id: str, tag: str, duration: float) -> None:
    analytics_cache_misses_total.labels(function_id=function_id, tag=tag).inc()
    analytics_query_duration_seconds.labels(function_id=function_id).observe(duration)


def observe_cache_write_skipped(function_id: str, reason: str) -> None:
    analytics_cache_write_skipped_total.labels(function_id=function_id, reason=reason).inc()


def observe_cache_invalidation(tag: str, source: str) -> None:
    analytics_cache_invalidations_total.labels(tag=tag, source=source).inc()


def observe_refresh_trigger(source: str, outcome: str) -> None:
    refresh_triggers_total.labels(source=source, outcome=outcome).inc()


def observe_refresh_finished(state: str) -> None:
    refresh_runs_finished_total.labels(state=state).inc()


def observe_authz_denied(guard: str, role: str) -> None:
    authz_denied_total.labels(guard=guard, role=role).inc()


def observe_anonymized_fields(resource: str, count: int) -> None:
    if count > 0:
        anonymized_fields_count.labels(resource=resource).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
