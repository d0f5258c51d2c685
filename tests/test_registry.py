"""Tests for scope registration, key recording and group invalidation."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from modelcache.cache import (
    CacheConfigurationError,
    DefaultMetadataSource,
    InvalidationRegistry,
    ScopeNotRegisteredError,
    build_cache_key,
    get_registry,
    set_registry,
)
from modelcache.cache.stores import MemoryStore


def make_keys(scope, count):
    return [build_cache_key(scope, "cached_op", fragments=[i]) for i in range(count)]


class TestScopeRegistration:
    """Test scope lifecycle and content digests."""

    def test_register_and_get(self, registry):
        scope = registry.register_scope("Post", version="d1")
        assert registry.get_scope("Post") is scope
        assert scope.content_digest == "d1"
        assert "Post" in registry

    def test_register_twice_returns_same_scope(self, registry):
        first = registry.register_scope("Post")
        assert registry.register_scope("Post") is first

    def test_reregister_with_new_version(self, registry):
        registry.register_scope("Post", version="1")
        assert registry.register_scope("Post", version="2").content_digest == "2"

    def test_version_takes_precedence_over_metadata(self, registry):
        metadata = MagicMock()
        metadata.source_digest.return_value = "from-source"
        scope = registry.register_scope("Post", version="v9", metadata=metadata)
        assert scope.content_digest == "v9"

    def test_digest_from_metadata(self, registry):
        scope = registry.register_scope("Post", metadata=DefaultMetadataSource(source=InvalidationRegistry))
        assert scope.content_digest is not None
        assert len(scope.content_digest) == 32

    def test_digest_failure_is_absorbed(self, registry):
        """Test: a failing digest lookup leaves the scope unversioned."""
        metadata = MagicMock()
        metadata.source_digest.side_effect = OSError("unreadable")
        scope = registry.register_scope("Post", metadata=metadata)
        assert scope.content_digest is None

    def test_unknown_scope(self, registry):
        with pytest.raises(ScopeNotRegisteredError, match="Ghost"):
            registry.get_scope("Ghost")

    @pytest.mark.parametrize("name", ["", None, 3])
    def test_invalid_scope_name(self, registry, name):
        with pytest.raises(CacheConfigurationError):
            registry.register_scope(name)

    def test_store_must_implement_interface(self):
        with pytest.raises(CacheConfigurationError):
            InvalidationRegistry(object())


class TestRecordAndFlush:
    """Test the Empty -> NonEmpty -> Empty key-set cycle."""

    def test_record_is_idempotent(self, registry):
        scope = registry.register_scope("Post")
        key = build_cache_key("Post", "cached_op")

        assert registry.record("Post", key) is True
        assert registry.record("Post", key) is False
        assert scope.keys() == [key]

    def test_record_then_flush_round_trip(self, registry, store):
        scope = registry.register_scope("Post")
        keys = make_keys("Post", 4)
        for key in keys + keys[:2]:
            registry.record(scope, key)

        assert registry.flush(scope) == 4
        assert len(scope) == 0
        assert sorted(map(str, store.deleted)) == sorted(map(str, keys))

    def test_flush_on_empty_is_noop(self):
        store = MagicMock()
        registry = InvalidationRegistry(store)
        registry.register_scope("Post")

        assert registry.flush("Post") == 0
        store.delete.assert_not_called()

    def test_write_deletes_each_key_once(self):
        """Test: a write deletes every recorded key exactly once; next flush is a no-op."""
        store = MagicMock()
        registry = InvalidationRegistry(store)
        scope = registry.register_scope("Post")
        keys = make_keys("Post", 3)
        for key in keys:
            registry.record(scope, key)

        assert registry.on_write("Post") == 3
        assert store.delete.call_count == 3
        assert {call.args[0] for call in store.delete.call_args_list} == set(keys)

        assert registry.on_write("Post") == 0
        assert store.delete.call_count == 3

    def test_failed_delete_still_clears(self, registry, store, log_messages):
        """Test: one of three deletes fails; count is 3, set cleared, no raise."""
        scope = registry.register_scope("Post")
        keys = make_keys("Post", 3)
        for key in keys:
            registry.record(scope, key)
        store.failing.add(keys[1])

        assert registry.on_write(scope) == 3
        assert len(scope) == 0
        assert store.deleted == keys
        assert any("delete failed" in m for m in log_messages)

    def test_on_write_never_raises(self, registry):
        assert registry.on_write("NeverRegistered") == 0

    def test_flush_unknown_scope_raises(self, registry):
        with pytest.raises(ScopeNotRegisteredError):
            registry.flush("NeverRegistered")

    def test_scopes_are_independent(self, registry):
        posts = registry.register_scope("Post")
        comments = registry.register_scope("Comment")
        registry.record(posts, build_cache_key("Post", "op"))
        registry.record(comments, build_cache_key("Comment", "op"))

        registry.flush(posts)
        assert len(posts) == 0
        assert len(comments) == 1

    def test_flush_all(self, registry):
        registry.register_scope("Post")
        registry.register_scope("Comment")
        for key in make_keys("Post", 2):
            registry.record("Post", key)

        assert registry.flush_all() == {"Post": 2, "Comment": 0}


class TestConcurrency:
    """Test record and flush under concurrent access."""

    def test_concurrent_records_deduplicate(self, registry):
        scope = registry.register_scope("Post")
        keys = make_keys("Post", 200)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda k: registry.record(scope, k), keys * 4))

        assert sum(results) == 200
        assert len(scope) == 200

    def test_record_racing_flush_never_loses_keys(self, registry):
        """Test: every key lands in exactly one flush."""
        scope = registry.register_scope("Post")
        keys = make_keys("Post", 2000)
        flushed = []
        flushed_lock = threading.Lock()
        done = threading.Event()

        def writer(chunk):
            for key in chunk:
                registry.record(scope, key)

        def flusher():
            while not done.is_set():
                count = registry.flush(scope)
                with flushed_lock:
                    flushed.append(count)

        flush_thread = threading.Thread(target=flusher)
        flush_thread.start()
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(writer, [keys[i::4] for i in range(4)]))
        done.set()
        flush_thread.join()
        flushed.append(registry.flush(scope))

        assert sum(flushed) == 2000


class TestDefaultRegistry:
    def test_lazy_default_uses_memory_store(self):
        registry = get_registry()
        assert isinstance(registry.store, MemoryStore)
        assert get_registry() is registry

    def test_set_registry(self, registry):
        set_registry(registry)
        assert get_registry() is registry
