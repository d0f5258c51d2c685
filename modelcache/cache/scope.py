"""Per-scope cache state."""

from __future__ import annotations

import threading
from typing import Any, Optional

from modelcache.logging_config import get_logger

from .keys import CacheKey
from .metadata import DefaultMetadataSource, ModelMetadataSource

logger = get_logger(name=__name__)


class Scope:
    """One cacheable namespace and the keys recorded against it.

    ``record`` and ``drain`` hold the same lock, so a record either lands
    in the set a flush drains or in the fresh set left behind for the
    next flush.
    """

    def __init__(
        self,
        name: str,
        content_digest: Optional[str] = None,
        metadata: Optional[ModelMetadataSource] = None,
    ):
        self.name = name
        self.content_digest = content_digest
        self.metadata = metadata or DefaultMetadataSource()
        self._keys: dict[CacheKey, None] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Scope(name='{self.name}', digest={self.content_digest!r}, keys={len(self)})>"

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._keys

    def record(self, key: CacheKey) -> bool:
        """Add a key; returns False if it was already recorded."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys[key] = None
            return True

    def drain(self) -> list[CacheKey]:
        """Atomically take every recorded key and leave the set empty."""
        with self._lock:
            keys, self._keys = self._keys, {}
        return list(keys)

    def keys(self) -> list[CacheKey]:
        """Snapshot of the recorded keys, in recording order."""
        with self._lock:
            return list(self._keys)

    def instance_identity(self, instance: Any) -> Optional[str]:
        """Identity of a bound record, or None when it has none."""
        try:
            return self.metadata.instance_identity(instance)
        except Exception as e:
            logger.debug("No identity for {} in scope {}: {}", type(instance).__name__, self.name, e)
            return None
