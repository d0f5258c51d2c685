"""Shared fixtures for modelcache tests."""

import pytest
from loguru import logger

from modelcache.cache import InvalidationRegistry, MemoryStore, set_registry
from modelcache.config.settings import get_settings


class FlakyStore(MemoryStore):
    """MemoryStore whose delete fails for selected keys."""

    def __init__(self):
        super().__init__()
        self.failing = set()
        self.deleted = []

    def delete(self, key):
        self.deleted.append(key)
        if key in self.failing:
            raise ConnectionError(f"delete failed for {key}")
        super().delete(key)


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Fresh settings and no process-wide registry for each test."""
    get_settings.cache_clear()
    set_registry(None)
    yield
    set_registry(None)
    get_settings.cache_clear()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def registry(store):
    return InvalidationRegistry(store)


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during the test."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
