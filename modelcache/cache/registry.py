"""Scope registration and group invalidation.

Every key computed on a cache miss is recorded against its scope. A write
to the scope's data flushes the scope: each recorded key is deleted from
the store and the set is emptied.

Usage:
    registry = InvalidationRegistry(MemoryStore())
    registry.register_scope("Post", version="v3")
    ...
    registry.on_write("Post")   # from the ORM's post-commit hook
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Union

from modelcache.config.settings import get_settings
from modelcache.logging_config import get_logger

from .exceptions import CacheConfigurationError, ScopeNotRegisteredError
from .keys import CacheKey
from .metadata import DefaultMetadataSource, ModelMetadataSource
from .scope import Scope
from .stores import Store, create_store

logger = get_logger(name=__name__)

ScopeRef = Union[str, Scope]


class InvalidationRegistry:
    """Process-wide table of scopes, their recorded keys and operations."""

    def __init__(self, store: Store):
        if not all(callable(getattr(store, m, None)) for m in ("fetch_or_compute", "delete")):
            raise CacheConfigurationError(
                f"{type(store).__name__} does not implement fetch_or_compute() and delete()"
            )
        self.store = store
        self.operations: dict[tuple[str, str], Any] = {}
        self._scopes: dict[str, Scope] = {}
        self._lock = threading.Lock()

    def __contains__(self, scope_name: str) -> bool:
        return scope_name in self._scopes

    # ==================== Scopes ====================

    def register_scope(
        self,
        name: str,
        version: Optional[str] = None,
        metadata: Optional[ModelMetadataSource] = None,
    ) -> Scope:
        """Create the scope ``name`` or return the one already registered.

        Args:
            name: Scope name, normally the model class name
            version: Explicit content version tag; takes precedence over
                ``metadata.source_digest()``
            metadata: Digest and instance identity lookups for the scope

        Returns:
            The registered Scope.
        """
        if not name or not isinstance(name, str):
            raise CacheConfigurationError(f"Scope name must be a non-empty string, got {name!r}")

        with self._lock:
            scope = self._scopes.get(name)
            if scope is not None:
                if version is not None and str(version) != scope.content_digest:
                    logger.info(
                        "Scope '{}' version changed {} -> {}",
                        name, scope.content_digest, version,
                    )
                    scope.content_digest = str(version)
                if metadata is not None:
                    scope.metadata = metadata
                return scope

            metadata = metadata or DefaultMetadataSource(version=version)
            digest = str(version) if version is not None else _safe_digest(metadata, name)
            scope = Scope(name, content_digest=digest, metadata=metadata)
            self._scopes[name] = scope

        logger.debug("Registered cache scope '{}' (digest={})", name, digest)
        return scope

    def get_scope(self, scope: ScopeRef) -> Scope:
        """Resolve a scope name (or pass through a Scope)."""
        if isinstance(scope, Scope):
            return scope
        try:
            return self._scopes[scope]
        except KeyError:
            raise ScopeNotRegisteredError(scope) from None

    def scopes(self) -> list[Scope]:
        with self._lock:
            return list(self._scopes.values())

    # ==================== Keys ====================

    def record(self, scope: ScopeRef, key: CacheKey) -> bool:
        """Remember ``key`` for the next flush of ``scope``.

        Returns:
            True if the key was new, False if already recorded.
        """
        return self.get_scope(scope).record(key)

    def flush(self, scope: ScopeRef) -> int:
        """Delete every key recorded for ``scope`` and clear the set.

        Deletion is best-effort: a failing key is logged and skipped, and
        is still removed from the set.

        Returns:
            Number of keys processed.
        """
        scope = self.get_scope(scope)
        keys = scope.drain()
        if not keys:
            logger.debug("No cache keys recorded in scope '{}' to invalidate", scope.name)
            return 0

        failed = 0
        for key in keys:
            try:
                self.store.delete(key)
            except Exception as e:
                failed += 1
                logger.warning("Cache delete failed for {} in scope '{}': {}", key, scope.name, e)

        if failed:
            logger.warning(
                "Invalidated {} cache keys in scope '{}' ({} deletes failed)",
                len(keys), scope.name, failed,
            )
        else:
            logger.info("Invalidated {} cache keys in scope '{}'", len(keys), scope.name)
        return len(keys)

    def flush_all(self) -> dict[str, int]:
        """Flush every registered scope.

        Returns:
            Mapping of scope name to number of keys processed.
        """
        return {scope.name: self.flush(scope) for scope in self.scopes()}

    def on_write(self, scope: ScopeRef) -> int:
        """Write hook: flush ``scope`` after its data was committed.

        Never raises; a failed invalidation must not fail the write.
        """
        try:
            return self.flush(scope)
        except Exception as e:
            logger.error("Cache invalidation after write failed for {}: {}", scope, e)
            return 0

    # ==================== Operations ====================

    def define_cached_operation(self, scope_name: str, operation_name: str, compute: Callable, **options):
        """Register a cached operation; see operations.define_cached_operation."""
        from .operations import define_cached_operation

        return define_cached_operation(scope_name, operation_name, compute, registry=self, **options)


def _safe_digest(metadata: ModelMetadataSource, scope_name: str) -> Optional[str]:
    try:
        digest = metadata.source_digest(scope_name)
    except Exception as e:
        logger.debug("Source digest failed for scope '{}': {}", scope_name, e)
        return None
    return str(digest) if digest else None


_registry: Optional[InvalidationRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> InvalidationRegistry:
    """Get the process-wide registry, creating it from settings on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = InvalidationRegistry(create_store(get_settings()))
    return _registry


def set_registry(registry: Optional[InvalidationRegistry]) -> None:
    """Replace the process-wide registry (None resets to lazy creation)."""
    global _registry
    with _registry_lock:
        _registry = registry
