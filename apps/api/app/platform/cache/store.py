from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum, StrEnum
from threading import Lock
from typing import Any, Protocol

import redis
from pydantic import BaseModel


def _canonical(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _canonical(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _canonical(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, list | tuple):
        return [_canonical(item) for item in value]
    if isinstance(value, set | frozenset):
        return sorted((_canonical(item) for item in value), key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(_canonical(value), sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True, slots=True)
class CacheKey:
    function_id: str
    args_fingerprint: str

    @classmethod
    def for_call(cls, function_id: str, args: Any) -> "CacheKey":
        digest = hashlib.sha256(canonical_json(args).encode("utf-8")).hexdigest()
        return cls(function_id=function_id, args_fingerprint=digest)

    def __str__(self) -> str:
        return f"{self.function_id}:{self.args_fingerprint[:16]}"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: CacheKey
    value: bytes
    tags: frozenset[str]
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheWriteStatus(StrEnum):
    OK = "ok"
    SKIPPED_TOO_LARGE = "skipped_too_large"
    SKIPPED_STALE = "skipped_stale"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CacheWriteResult:
    status: CacheWriteStatus
    size_bytes: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == CacheWriteStatus.OK


class CacheStore(Protocol):
    """Storage behind the cache gateway. Implementations must be safe for concurrent use.

    Every tag carries a generation that ``invalidate_tag`` bumps. ``write`` is
    given the generations observed before the value was computed and must
    refuse the write with ``SKIPPED_STALE`` if any of them has moved since.
    """

    def read(self, key: CacheKey) -> CacheEntry | None:
        ...

    def generations(self, tags: Iterable[str]) -> dict[str, int]:
        ...

    def write(
        self,
        key: CacheKey,
        value: bytes,
        tags: frozenset[str],
        ttl_seconds: int,
        generations: Mapping[str, int] | None = None,
    ) -> CacheWriteResult:
        ...

    def invalidate_tag(self, tag: str) -> int:
        ...

    def clear(self) -> None:
        ...


class InMemoryCacheStore:
    """Process-local store with a per-entry size ceiling and lazy expiry."""

    def __init__(self, *, max_entry_bytes: int, clock: Any = time.time) -> None:
        self._max_entry_bytes = max_entry_bytes
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._generations: dict[str, int] = {}

    def read(self, key: CacheKey) -> CacheEntry | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry

    def generations(self, tags: Iterable[str]) -> dict[str, int]:
        with self._lock:
            return {tag: self._generations.get(tag, 0) for tag in tags}

    def write(
        self,
        key: CacheKey,
        value: bytes,
        tags: frozenset[str],
        ttl_seconds: int,
        generations: Mapping[str, int] | None = None,
    ) -> CacheWriteResult:
        size = len(value)
        if size > self._max_entry_bytes:
            return CacheWriteResult(status=CacheWriteStatus.SKIPPED_TOO_LARGE, size_bytes=size)

        now = self._clock()
        entry = CacheEntry(key=key, value=value, tags=tags, created_at=now, expires_at=now + ttl_seconds)
        with self._lock:
            if generations and any(self._generations.get(tag, 0) != seen for tag, seen in generations.items()):
                return CacheWriteResult(status=CacheWriteStatus.SKIPPED_STALE, size_bytes=size)
            self._entries[key] = entry
        return CacheWriteResult(status=CacheWriteStatus.OK, size_bytes=size)

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            self._generations[tag] = self._generations.get(tag, 0) + 1
            doomed = [key for key, entry in self._entries.items() if tag in entry.tags]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheStore:
    """Store shared by every API instance and the Celery worker.

    Entries are ``SETEX`` keys holding a small JSON envelope. Each tag keeps a
    set of its entry keys and an ``INCR`` generation counter. Writes run in a
    ``WATCH``/``MULTI`` transaction on the generation keys, so an invalidation
    that lands while a value is being computed turns the write into
    ``SKIPPED_STALE``.
    """

    def __init__(self, client: redis.Redis, *, max_entry_bytes: int, prefix: str = "insights:cache", clock: Any = time.time) -> None:
        self._client = client
        self._max_entry_bytes = max_entry_bytes
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, *, max_entry_bytes: int) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url), max_entry_bytes=max_entry_bytes)

    def _entry_key(self, key: CacheKey) -> str:
        return f"{self._prefix}:entry:{key.function_id}:{key.args_fingerprint}"

    def _members_key(self, tag: str) -> str:
        return f"{self._prefix}:tag:{tag}"

    def _generation_key(self, tag: str) -> str:
        return f"{self._prefix}:gen:{tag}"

    def read(self, key: CacheKey) -> CacheEntry | None:
        raw = self._client.get(self._entry_key(key))
        if raw is None:
            return None
        envelope = json.loads(raw)
        return CacheEntry(
            key=key,
            value=envelope["value"].encode("utf-8"),
            tags=frozenset(envelope["tags"]),
            created_at=envelope["created_at"],
            expires_at=envelope["expires_at"],
        )

    def generations(self, tags: Iterable[str]) -> dict[str, int]:
        ordered = list(tags)
        if not ordered:
            return {}
        values = self._client.mget([self._generation_key(tag) for tag in ordered])
        return {tag: int(value or 0) for tag, value in zip(ordered, values)}

    def write(
        self,
        key: CacheKey,
        value: bytes,
        tags: frozenset[str],
        ttl_seconds: int,
        generations: Mapping[str, int] | None = None,
    ) -> CacheWriteResult:
        size = len(value)
        if size > self._max_entry_bytes:
            return CacheWriteResult(status=CacheWriteStatus.SKIPPED_TOO_LARGE, size_bytes=size)

        now = self._clock()
        entry_key = self._entry_key(key)
        envelope = json.dumps(
            {
                "value": value.decode("utf-8"),
                "tags": sorted(tags),
                "created_at": now,
                "expires_at": now + ttl_seconds,
            }
        )
        watched = sorted(generations or {})
        try:
            with self._client.pipeline() as pipe:
                if watched:
                    pipe.watch(*[self._generation_key(tag) for tag in watched])
                    current = pipe.mget([self._generation_key(tag) for tag in watched])
                    if any(int(seen or 0) != generations[tag] for tag, seen in zip(watched, current)):  # type: ignore[index]
                        return CacheWriteResult(status=CacheWriteStatus.SKIPPED_STALE, size_bytes=size)
                pipe.multi()
                pipe.setex(entry_key, ttl_seconds, envelope)
                for tag in tags:
                    pipe.sadd(self._members_key(tag), entry_key)
                pipe.execute()
        except redis.WatchError:
            return CacheWriteResult(status=CacheWriteStatus.SKIPPED_STALE, size_bytes=size)
        return CacheWriteResult(status=CacheWriteStatus.OK, size_bytes=size)

    def invalidate_tag(self, tag: str) -> int:
        # Bump first: a writer that has not yet committed now fails its WATCH,
        # and one that already committed has its key in the member set below.
        self._client.incr(self._generation_key(tag))
        members_key = self._members_key(tag)
        members = list(self._client.smembers(members_key))
        if not members:
            return 0
        removed = self._client.delete(*members)
        self._client.srem(members_key, *members)
        return int(removed)

    def clear(self) -> None:
        doomed = list(self._client.scan_iter(match=f"{self._prefix}:entry:*"))
        doomed.extend(self._client.scan_iter(match=f"{self._prefix}:tag:*"))
        if doomed:
            self._client.delete(*doomed)
