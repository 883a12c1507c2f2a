from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.auth import decode_session_descriptor
from app.core.config import get_settings
from app.core.errors import error_response
from app.platform.security.errors import SessionInvalid


logger = logging.getLogger("app.request")

_WINDOW_SECONDS = 60
_ANONYMOUS = "anonymous"

# Query endpoints that reach the warehouse on a cache miss. Refresh triggers
# carry their own cooldown and are not limited here.
_QUERY_PREFIXES = ("/api/dashboard", "/api/sga-hub", "/api/gc-hub")


@dataclass(slots=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int = 0


@dataclass(slots=True)
class _Bucket:
    tokens: float
    refilled_at: float


class QueryRateLimiter:
    """Token buckets keyed by (principal, endpoint group), refilled continuously.

    A bucket left alone for a whole window is full again, so it is dropped
    and recreated on the next request.
    """

    def __init__(self, clock=time.monotonic) -> None:  # type: ignore[no-untyped-def]
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._swept_at = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def consume(self, principal: str, group: str, per_minute: int) -> RateDecision:
        if per_minute <= 0:
            return RateDecision(allowed=False, retry_after_seconds=_WINDOW_SECONDS)

        now = self._clock()
        per_second = per_minute / float(_WINDOW_SECONDS)

        with self._lock:
            if now - self._swept_at >= _WINDOW_SECONDS:
                self._evict_idle(now)
            bucket = self._buckets.setdefault((principal, group), _Bucket(tokens=float(per_minute), refilled_at=now))
            bucket.tokens = min(float(per_minute), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateDecision(allowed=True)
            return RateDecision(
                allowed=False,
                retry_after_seconds=max(1, math.ceil((1.0 - bucket.tokens) / per_second)),
            )

    def _evict_idle(self, now: float) -> None:
        idle = [key for key, bucket in self._buckets.items() if now - bucket.refilled_at >= _WINDOW_SECONDS]
        for key in idle:
            del self._buckets[key]
        self._swept_at = now

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = QueryRateLimiter()


class AnalyticsRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-principal limit on analytics POST queries, answered with the standard error envelope."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if settings.rate_limit_disabled or request.method != "POST" or not path.startswith(_QUERY_PREFIXES):
            return await call_next(request)

        principal = _principal_key(request)
        group = endpoint_group(path)
        decision = _limiter.consume(principal, group, settings.rate_limit_analytics_per_minute)
        if decision.allowed:
            return await call_next(request)

        logger.warning(
            "rate_limit.exceeded",
            extra={"principal": principal, "path": path, "reason": group},
        )
        response = error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
        )
        response.headers["Retry-After"] = str(decision.retry_after_seconds)
        return response


def endpoint_group(path: str) -> str:
    """``/api/dashboard/conversion-rates`` -> ``dashboard``."""
    parts = [part for part in path.split("/") if part]
    return parts[1] if len(parts) > 1 else "analytics"


def _principal_key(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return _ANONYMOUS
    try:
        descriptor = decode_session_descriptor(header[len("Bearer "):].strip())
    except SessionInvalid:
        return _ANONYMOUS
    principal = descriptor.get("email") or descriptor.get("sub")
    return str(principal).strip().lower() if principal else _ANONYMOUS


def reset_rate_limiter() -> None:
    _limiter.clear()
