"""Tests for MemoryStore and RedisStore."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from modelcache.cache.keys import build_cache_key, render_key
from modelcache.cache.serialization import dumps
from modelcache.cache.stores import KeyLocks, MemoryStore, RedisStore, create_store, expiry_seconds
from modelcache.config.settings import Settings

KEY = build_cache_key("Post", "cached_comments", content_digest="d1", instance_id="42")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMemoryStore:
    """Test in-process fetch-or-compute semantics."""

    def test_miss_then_hit(self):
        store = MemoryStore()
        assert store.fetch_or_compute(KEY, {}, lambda: [1, 2]) == ([1, 2], False)
        assert store.fetch_or_compute(KEY, {}, lambda: "other") == ([1, 2], True)

    def test_none_is_cached(self):
        store = MemoryStore()
        store.fetch_or_compute(KEY, {}, lambda: None)
        assert store.fetch_or_compute(KEY, {}, lambda: "other") == (None, True)

    def test_expiry(self):
        clock = FakeClock()
        store = MemoryStore(clock=clock)
        store.fetch_or_compute(KEY, {"expires_in": timedelta(seconds=60)}, lambda: "v1")

        clock.now += 59
        assert store.fetch_or_compute(KEY, {}, lambda: "v2") == ("v1", True)
        clock.now += 2
        assert store.fetch_or_compute(KEY, {}, lambda: "v2") == ("v2", False)

    def test_unknown_options_ignored(self):
        store = MemoryStore()
        assert store.fetch_or_compute(KEY, {"race_condition_ttl": 5}, lambda: 1) == (1, False)

    def test_delete(self):
        store = MemoryStore()
        store.fetch_or_compute(KEY, {}, lambda: 1)
        store.delete(KEY)
        assert KEY not in store
        store.delete(KEY)  # missing key is fine

    def test_compute_runs_once_under_contention(self):
        store = MemoryStore()
        calls = []
        barrier = threading.Barrier(8)

        def compute():
            calls.append(1)
            time.sleep(0.05)
            return "v"

        def worker(_):
            barrier.wait()
            return store.fetch_or_compute(KEY, {}, compute)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(worker, range(8)))

        assert len(calls) == 1
        assert [hit for _, hit in results].count(False) == 1
        assert all(value == "v" for value, _ in results)

    def test_different_keys_compute_in_parallel(self):
        store = MemoryStore()
        other = build_cache_key("Post", "cached_other")
        started = threading.Event()
        release = threading.Event()

        def blocking():
            started.set()
            release.wait(5)
            return "slow"

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(store.fetch_or_compute, KEY, {}, blocking)
            assert started.wait(5)
            assert store.fetch_or_compute(other, {}, lambda: "fast") == ("fast", False)
            release.set()
            assert future.result() == ("slow", False)

    def test_key_locks_are_released(self):
        store = MemoryStore()
        store.fetch_or_compute(KEY, {}, lambda: 1)
        assert len(store._key_locks) == 0


class TestExpirySeconds:
    @pytest.mark.parametrize("options,expected", [
        ({}, None),
        ({"expires_in": 5}, 5.0),
        ({"expires_in": timedelta(minutes=2)}, 120.0),
    ])
    def test_values(self, options, expected):
        assert expiry_seconds(options) == expected

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            expiry_seconds({"expires_in": 0})


class TestRedisStore:
    """Test RedisStore against a mocked redis client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get.return_value = None
        return client

    def test_miss_sets_serialized_value(self, client):
        store = RedisStore(client, prefix="cache", digest_length=16)
        value, hit = store.fetch_or_compute(KEY, {"expires_in": 60}, lambda: {"a": (1, 2)})

        name = render_key(KEY, "cache", 16)
        assert (value, hit) == ({"a": (1, 2)}, False)
        client.set.assert_called_once_with(name, dumps({"a": (1, 2)}), px=60000)

    def test_hit_deserializes(self, client):
        client.get.return_value = dumps(("x", 1)).decode()
        store = RedisStore(client)
        assert store.fetch_or_compute(KEY, {}, lambda: "unused") == (("x", 1), True)
        client.set.assert_not_called()

    def test_extra_options_forwarded_to_set(self, client):
        store = RedisStore(client)
        store.fetch_or_compute(KEY, {"nx": True}, lambda: 1)
        assert client.set.call_args.kwargs == {"nx": True}

    def test_delete_uses_rendered_name(self, client):
        store = RedisStore(client, prefix="app")
        store.delete(KEY)
        client.delete.assert_called_once_with(store.key_name(KEY))
        assert store.key_name(KEY).startswith("app:Post:d1:")

    def test_get_errors_propagate(self, client):
        client.get.side_effect = ConnectionError("down")
        store = RedisStore(client)
        with pytest.raises(ConnectionError):
            store.fetch_or_compute(KEY, {}, lambda: 1)


class TestKeyLocks:
    def test_same_key_serialized(self):
        locks = KeyLocks()
        order = []

        def worker(tag):
            with locks.hold("k"):
                order.append(f"{tag}-in")
                time.sleep(0.02)
                order.append(f"{tag}-out")

        threads = [threading.Thread(target=worker, args=(t,)) for t in "ab"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert order[0][0] == order[1][0]
        assert len(locks) == 0


class TestCreateStore:
    def test_memory_store_without_redis_url(self):
        assert isinstance(create_store(Settings()), MemoryStore)

    def test_redis_store_with_url(self, monkeypatch):
        client = MagicMock()
        monkeypatch.setattr("modelcache.config.redis.init_redis", lambda url: client)
        store = create_store(Settings(redis_url="redis://localhost:6379/0", key_prefix="mc"))
        assert isinstance(store, RedisStore)
        assert store.client is client
        assert store.prefix == "mc"


class TestRedisConnection:
    def test_lifecycle(self, monkeypatch):
        from modelcache.config import redis as redis_config

        client = MagicMock()
        redis_cls = MagicMock()
        redis_cls.from_url.return_value = client
        monkeypatch.setattr(redis_config, "Redis", redis_cls)

        assert redis_config.init_redis("redis://localhost:6379/0") is client
        redis_cls.from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
        client.ping.assert_called_once()
        assert redis_config.get_redis() is client

        redis_config.close_redis()
        client.close.assert_called_once()
        with pytest.raises(RuntimeError):
            redis_config.get_redis()
