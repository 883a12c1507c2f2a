from __future__ import annotations

import functools
import json
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from threading import Lock
from typing import Any, TypeVar

from app.core.config import get_settings
from app.metrics import observe_cache_hit, observe_cache_invalidation, observe_cache_miss, observe_cache_write_skipped
from app.platform.cache.store import (
    CacheEntry,
    CacheKey,
    CacheStore,
    CacheWriteResult,
    CacheWriteStatus,
    InMemoryCacheStore,
    RedisCacheStore,
)


logger = logging.getLogger("app.cache")

T = TypeVar("T")


class CacheTag(StrEnum):
    DASHBOARD = "dashboard"
    SGA_HUB = "sga-hub"


ALL_CACHE_TAGS: tuple[CacheTag, ...] = (CacheTag.DASHBOARD, CacheTag.SGA_HUB)


class QueryClass(StrEnum):
    AGGREGATE = "aggregate"
    DETAIL = "detail"


def ttl_for(query_class: QueryClass) -> int:
    settings = get_settings()
    if query_class == QueryClass.DETAIL:
        return settings.cache_detail_ttl_seconds
    return settings.cache_aggregate_ttl_seconds


class CacheGateway:
    """Read-through memoization of analytical queries, grouped by invalidation tag.

    Values are stored as JSON bytes and decoded on every return, so a miss and
    the hits that follow it hand back equal values. Exceptions raised by
    ``compute`` propagate and nothing is written.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    @property
    def store(self) -> CacheStore:
        return self._store

    def get_or_compute(
        self,
        function_id: str,
        args: Any,
        tag: CacheTag | str,
        ttl_seconds: int,
        compute: Callable[[], Any],
    ) -> Any:
        key = CacheKey.for_call(function_id, args)
        tag_value = str(tag)
        tags = frozenset({tag_value})

        entry = self._read(key)
        if entry is not None:
            observe_cache_hit(function_id=function_id, tag=tag_value)
            logger.debug("cache.hit", extra={"function_id": function_id, "cache_key": str(key)})
            return json.loads(entry.value)

        # Taken before compute so a value read from the pre-refresh snapshot is never stored.
        generations = self._generations(tags)
        started = time.perf_counter()
        value = compute()
        duration = time.perf_counter() - started
        observe_cache_miss(function_id=function_id, tag=tag_value, duration=duration)

        payload = json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")
        result = self._write(key, payload, tags, ttl_seconds, generations)
        logger.info(
            "cache.miss",
            extra={
                "function_id": function_id,
                "cache_tag": tag_value,
                "cache_key": str(key),
                "size_bytes": result.size_bytes,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        if not result.ok:
            observe_cache_write_skipped(function_id=function_id, reason=result.status.value)
            logger.warning(
                "cache.write_skipped",
                extra={
                    "function_id": function_id,
                    "cache_key": str(key),
                    "size_bytes": result.size_bytes,
                    "reason": result.status.value,
                    "error": result.error,
                },
            )
        return json.loads(payload)

    def invalidate(self, tag: CacheTag | str, *, source: str = "manual") -> int:
        tag_value = str(tag)
        removed = self._store.invalidate_tag(tag_value)
        observe_cache_invalidation(tag=tag_value, source=source)
        logger.info("cache.invalidated", extra={"cache_tag": tag_value, "removed": removed, "trigger_source": source})
        return removed

    def invalidate_all(self, *, source: str = "manual") -> dict[str, int]:
        return {str(tag): self.invalidate(tag, source=source) for tag in ALL_CACHE_TAGS}

    def _read(self, key: CacheKey) -> CacheEntry | None:
        try:
            return self._store.read(key)
        except Exception as exc:
            logger.warning("cache.read_failed", extra={"cache_key": str(key), "error": str(exc)})
            return None

    def _generations(self, tags: frozenset[str]) -> dict[str, int] | None:
        try:
            return self._store.generations(tags)
        except Exception as exc:
            logger.warning("cache.read_failed", extra={"cache_tag": ",".join(sorted(tags)), "error": str(exc)})
            return None

    def _write(
        self,
        key: CacheKey,
        payload: bytes,
        tags: frozenset[str],
        ttl_seconds: int,
        generations: dict[str, int] | None,
    ) -> CacheWriteResult:
        if generations is None:
            return CacheWriteResult(
                status=CacheWriteStatus.FAILED,
                size_bytes=len(payload),
                error="tag generations unavailable",
            )
        try:
            return self._store.write(key, payload, tags, ttl_seconds, generations)
        except Exception as exc:
            return CacheWriteResult(status=CacheWriteStatus.FAILED, size_bytes=len(payload), error=str(exc))


_CACHE_GATEWAY: CacheGateway | None = None
_CACHE_LOCK = Lock()


def build_cache_store() -> CacheStore:
    """``redis`` shares entries and invalidations across API instances and the worker."""
    settings = get_settings()
    if settings.cache_backend == "redis":
        return RedisCacheStore.from_url(settings.redis_url, max_entry_bytes=settings.cache_max_entry_bytes)
    return InMemoryCacheStore(max_entry_bytes=settings.cache_max_entry_bytes)


def get_cache_gateway() -> CacheGateway:
    """Get the active cache gateway, building it from settings on first use."""

    global _CACHE_GATEWAY
    with _CACHE_LOCK:
        if _CACHE_GATEWAY is None:
            _CACHE_GATEWAY = CacheGateway(build_cache_store())
        return _CACHE_GATEWAY


def set_cache_gateway(gateway: CacheGateway | None) -> None:
    """Set the active cache gateway. ``None`` resets to the lazily built default."""

    global _CACHE_GATEWAY
    with _CACHE_LOCK:
        _CACHE_GATEWAY = gateway


def cached_query(
    function_id: str,
    tag: CacheTag,
    query_class: QueryClass = QueryClass.AGGREGATE,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Memoize a query function under ``function_id`` keyed by its arguments."""

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return get_cache_gateway().get_or_compute(
                function_id,
                {"args": list(args), "kwargs": kwargs},
                tag,
                ttl_for(query_class),
                lambda: fn(*args, **kwargs),
            )

        wrapper.uncached = fn  # type: ignore[attr-defined]
        return wrapper

    return decorator
