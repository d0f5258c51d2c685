"""Cache stores.

A store maps CacheKey -> value. The caching layer only needs two calls:

    value, was_hit = store.fetch_or_compute(key, options, compute)
    store.delete(key)

``fetch_or_compute`` must run ``compute`` at most once concurrently per
key within a process. ``options`` are store-specific and passed through
untouched by the caching layer; both stores here understand
``expires_in`` (seconds or timedelta).
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol, runtime_checkable

from modelcache.config.settings import Settings
from modelcache.logging_config import get_logger

from .keys import CacheKey, render_key
from .serialization import dumps, loads

logger = get_logger(name=__name__)

_MISSING = object()


@runtime_checkable
class Store(Protocol):
    def fetch_or_compute(
        self,
        key: CacheKey,
        options: Mapping[str, Any],
        compute: Callable[[], Any],
    ) -> tuple[Any, bool]:
        ...

    def delete(self, key: CacheKey) -> None:
        ...


def expiry_seconds(options: Mapping[str, Any]) -> Optional[float]:
    """Read ``expires_in`` from store options as seconds."""
    value = options.get("expires_in")
    if value is None:
        return None
    if isinstance(value, timedelta):
        value = value.total_seconds()
    value = float(value)
    if value <= 0:
        raise ValueError(f"expires_in must be positive, got {options['expires_in']!r}")
    return value


class KeyLocks:
    """One lock per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Any, list] = {}

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MemoryStore:
    """In-process store with optional per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[CacheKey, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._key_locks = KeyLocks()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: CacheKey, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._data[key]
                return default
            return value

    def set(self, key: CacheKey, value: Any, expires_in: Optional[float] = None) -> None:
        expires_at = self._clock() + expires_in if expires_in else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def fetch_or_compute(self, key, options, compute):
        expires_in = expiry_seconds(options)

        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value, True

        with self._key_locks.hold(key):
            # Another thread may have computed it while we waited
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                return value, True
            value = compute()
            self.set(key, value, expires_in)
            return value, False

    def delete(self, key: CacheKey) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisStore:
    """Store backed by a synchronous redis-py client.

    Keys are rendered to ``<prefix>:<scope>:<call site>:<digest>`` strings,
    values serialized with the orjson envelope codec. Redis errors are not
    caught here.
    """

    def __init__(self, client, prefix: str = "cache", digest_length: int = 32):
        self.client = client
        self.prefix = prefix
        self.digest_length = digest_length
        self._key_locks = KeyLocks()

    def key_name(self, key: CacheKey) -> str:
        return render_key(key, self.prefix, self.digest_length)

    def fetch_or_compute(self, key, options, compute):
        name = self.key_name(key)
        set_options = dict(options)
        expires_in = expiry_seconds(set_options)
        set_options.pop("expires_in", None)

        raw = self.client.get(name)
        if raw is not None:
            return loads(raw), True

        with self._key_locks.hold(name):
            raw = self.client.get(name)
            if raw is not None:
                return loads(raw), True
            value = compute()
            if expires_in is not None:
                set_options["px"] = max(1, int(expires_in * 1000))
            self.client.set(name, dumps(value), **set_options)
            return value, False

    def delete(self, key: CacheKey) -> None:
        self.client.delete(self.key_name(key))


def create_store(settings: Settings) -> Store:
    """Redis store when ``redis_url`` is configured, memory store otherwise."""
    if settings.redis_url:
        from modelcache.config.redis import init_redis

        client = init_redis(settings.redis_url)
        return RedisStore(client, settings.key_prefix, settings.key_digest_length)

    logger.info("No redis_url configured, using in-process MemoryStore")
    return MemoryStore()
