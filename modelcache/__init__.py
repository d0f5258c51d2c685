"""Transparent memoization for ORM models with write-triggered invalidation."""

from modelcache.cache import (
    CacheConfigurationError,
    CacheKey,
    InvalidationRegistry,
    MemoryStore,
    RedisStore,
    ScopeNotRegisteredError,
    build_cache_key,
    cached,
    cover,
    define_cached_operation,
    get_registry,
    set_registry,
)

__version__ = "0.3.0"

__all__ = [
    "CacheConfigurationError",
    "CacheKey",
    "InvalidationRegistry",
    "MemoryStore",
    "RedisStore",
    "ScopeNotRegisteredError",
    "build_cache_key",
    "cached",
    "cover",
    "define_cached_operation",
    "get_registry",
    "set_registry",
]
