from __future__ import annotations

from collections.abc import Callable

import pytest
import redis

from app.core.config import get_settings
from app.platform.cache.gateway import CacheGateway, CacheTag, build_cache_store
from app.platform.cache.store import CacheKey, CacheWriteStatus, InMemoryCacheStore, RedisCacheStore


class FakeRedis:
    """Just enough of the redis-py client for the cache store, single-process."""

    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.sets: dict[str, set[bytes]] = {}
        self.versions: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.before_exec: Callable[[], None] | None = None

    @staticmethod
    def _key(key: str | bytes) -> str:
        return key.decode() if isinstance(key, bytes) else key

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def get(self, key: str) -> bytes | None:
        return self.values.get(self._key(key))

    def mget(self, keys: list[str]) -> list[bytes | None]:
        return [self.get(key) for key in keys]

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.values[key] = value.encode()
        self.ttls[key] = ttl
        self._touch(key)

    def incr(self, key: str) -> int:
        value = int(self.values.get(key, b"0")) + 1
        self.values[key] = str(value).encode()
        self._touch(key)
        return value

    def sadd(self, key: str, *members: str) -> None:
        self.sets.setdefault(key, set()).update(member.encode() for member in members)
        self._touch(key)

    def smembers(self, key: str) -> set[bytes]:
        return set(self.sets.get(key, set()))

    def srem(self, key: str, *members: bytes) -> None:
        self.sets.get(key, set()).difference_update(members)
        self._touch(key)

    def delete(self, *keys: str | bytes) -> int:
        removed = 0
        for raw in keys:
            key = self._key(raw)
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
                self._touch(key)
        return removed

    def scan_iter(self, match: str) -> list[str]:
        prefix = match.rstrip("*")
        return [key for key in [*self.values, *self.sets] if key.startswith(prefix)]

    def pipeline(self) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._watched: dict[str, int] = {}
        self._queued: list[Callable[[], object]] = []
        self._buffering = False

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, *exc: object) -> None:
        self._watched.clear()
        self._queued.clear()

    def watch(self, *keys: str) -> None:
        self._watched.update({key: self._client.versions.get(key, 0) for key in keys})

    def mget(self, keys: list[str]) -> list[bytes | None]:
        return self._client.mget(keys)

    def multi(self) -> None:
        self._buffering = True

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._queued.append(lambda: self._client.setex(key, ttl, value))

    def sadd(self, key: str, *members: str) -> None:
        self._queued.append(lambda: self._client.sadd(key, *members))

    def execute(self) -> list[object]:
        if self._client.before_exec is not None:
            self._client.before_exec()
        if any(self._client.versions.get(key, 0) != seen for key, seen in self._watched.items()):
            raise redis.WatchError("watched key changed")
        return [command() for command in self._queued]


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def store(fake_redis: FakeRedis) -> RedisCacheStore:
    return RedisCacheStore(fake_redis, max_entry_bytes=1024)  # type: ignore[arg-type]


def test_write_then_read_round_trips_with_ttl(store: RedisCacheStore, fake_redis: FakeRedis) -> None:
    key = CacheKey.for_call("dashboard.conversion_rates", {"start": "2025-01-01"})

    result = store.write(key, b'{"rate":0.5}', frozenset({"dashboard"}), 600, {"dashboard": 0})
    entry = store.read(key)

    assert result.ok
    assert entry is not None
    assert entry.value == b'{"rate":0.5}'
    assert entry.tags == frozenset({"dashboard"})
    assert list(fake_redis.ttls.values()) == [600]


def test_invalidate_removes_tagged_entries_and_bumps_generation(store: RedisCacheStore) -> None:
    dashboard = CacheKey.for_call("dash", {})
    hub = CacheKey.for_call("hub", {})
    store.write(dashboard, b"1", frozenset({"dashboard"}), 600, {"dashboard": 0})
    store.write(hub, b"2", frozenset({"sga-hub"}), 600, {"sga-hub": 0})

    assert store.invalidate_tag("dashboard") == 1
    assert store.read(dashboard) is None
    assert store.read(hub) is not None
    assert store.generations(["dashboard", "sga-hub"]) == {"dashboard": 1, "sga-hub": 0}
    assert store.invalidate_tag("dashboard") == 0


def test_write_with_outdated_generation_is_stale(store: RedisCacheStore) -> None:
    key = CacheKey.for_call("dash", {})
    seen = store.generations(["dashboard"])
    store.invalidate_tag("dashboard")

    result = store.write(key, b"1", frozenset({"dashboard"}), 600, seen)

    assert result.status == CacheWriteStatus.SKIPPED_STALE
    assert store.read(key) is None


def test_invalidation_racing_the_transaction_is_stale(store: RedisCacheStore, fake_redis: FakeRedis) -> None:
    key = CacheKey.for_call("dash", {})
    seen = store.generations(["dashboard"])
    fake_redis.before_exec = lambda: fake_redis.incr("insights:cache:gen:dashboard")

    result = store.write(key, b"1", frozenset({"dashboard"}), 600, seen)

    assert result.status == CacheWriteStatus.SKIPPED_STALE
    assert store.read(key) is None


def test_oversized_entry_is_skipped(store: RedisCacheStore) -> None:
    result = store.write(CacheKey.for_call("big", {}), b"x" * 2048, frozenset({"dashboard"}), 600, {"dashboard": 0})

    assert result.status == CacheWriteStatus.SKIPPED_TOO_LARGE


def test_invalidation_from_one_process_reaches_another(fake_redis: FakeRedis) -> None:
    api = CacheGateway(RedisCacheStore(fake_redis, max_entry_bytes=1024))  # type: ignore[arg-type]
    worker = CacheGateway(RedisCacheStore(fake_redis, max_entry_bytes=1024))  # type: ignore[arg-type]
    calls: list[int] = []

    def compute() -> object:
        calls.append(1)
        return {"snapshot": len(calls)}

    assert api.get_or_compute("dash", {}, CacheTag.DASHBOARD, 600, compute) == {"snapshot": 1}
    assert worker.invalidate_all(source="scheduled") == {"dashboard": 1, "sga-hub": 0}
    assert api.get_or_compute("dash", {}, CacheTag.DASHBOARD, 600, compute) == {"snapshot": 2}


def test_unreachable_redis_degrades_to_uncached_reads() -> None:
    class DownRedis(FakeRedis):
        def get(self, key: str) -> bytes | None:
            raise redis.ConnectionError("connection refused")

        def mget(self, keys: list[str]) -> list[bytes | None]:
            raise redis.ConnectionError("connection refused")

    gateway = CacheGateway(RedisCacheStore(DownRedis(), max_entry_bytes=1024))  # type: ignore[arg-type]

    assert gateway.get_or_compute("dash", {}, CacheTag.DASHBOARD, 600, lambda: [1]) == [1]


def test_cache_backend_setting_selects_the_store(monkeypatch: pytest.MonkeyPatch, fake_redis: FakeRedis) -> None:
    monkeypatch.setattr(redis.Redis, "from_url", classmethod(lambda cls, url, **kwargs: fake_redis))

    monkeypatch.setenv("CACHE_BACKEND", "redis")
    get_settings.cache_clear()
    assert isinstance(build_cache_store(), RedisCacheStore)

    monkeypatch.setenv("CACHE_BACKEND", "memory")
    get_settings.cache_clear()
    assert isinstance(build_cache_store(), InMemoryCacheStore)
