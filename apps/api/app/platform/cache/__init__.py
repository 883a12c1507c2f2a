from app.platform.cache.gateway import (
    ALL_CACHE_TAGS,
    CacheGateway,
    CacheTag,
    QueryClass,
    build_cache_store,
    cached_query,
    get_cache_gateway,
    set_cache_gateway,
    ttl_for,
)
from app.platform.cache.store import (
    CacheEntry,
    CacheKey,
    CacheStore,
    CacheWriteResult,
    CacheWriteStatus,
    InMemoryCacheStore,
    RedisCacheStore,
)

__all__ = [
    "ALL_CACHE_TAGS",
    "CacheGateway",
    "CacheTag",
    "QueryClass",
    "build_cache_store",
    "cached_query",
    "get_cache_gateway",
    "set_cache_gateway",
    "ttl_for",
    "CacheEntry",
    "CacheKey",
    "CacheStore",
    "CacheWriteResult",
    "CacheWriteStatus",
    "InMemoryCacheStore",
    "RedisCacheStore",
]
