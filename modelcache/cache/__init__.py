"""Caching utilities: key builder, scopes, stores, registry and operations."""

from .exceptions import CacheConfigurationError, CacheError, ScopeNotRegisteredError
from .keys import CacheKey, build_cache_key, render_key
from .metadata import DefaultMetadataSource, ModelMetadataSource, source_digest
from .operations import CachedOperation, cached, cover, define_cached_operation
from .registry import InvalidationRegistry, get_registry, set_registry
from .scope import Scope
from .stores import MemoryStore, RedisStore, Store, create_store

__all__ = [
    "CacheConfigurationError",
    "CacheError",
    "CacheKey",
    "CachedOperation",
    "DefaultMetadataSource",
    "InvalidationRegistry",
    "MemoryStore",
    "ModelMetadataSource",
    "RedisStore",
    "Scope",
    "ScopeNotRegisteredError",
    "Store",
    "build_cache_key",
    "cached",
    "cover",
    "create_store",
    "define_cached_operation",
    "get_registry",
    "render_key",
    "set_registry",
    "source_digest",
]
