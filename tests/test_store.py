import logging

import pytest

from conftest import FailingStore
from tidal_queue.models.config import QueueConfig
from tidal_queue.storage.store import (
    FallbackStore,
    MemoryStore,
    RedisStore,
    create_store,
)


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_hash_operations(self, store):
        await store.hash_set("q", "a", "1")
        await store.hash_set("q", "b", "2")
        await store.hash_set("q", "a", "3")

        assert await store.hash_get("q", "a") == "3"
        assert await store.hash_get("q", "missing") is None
        assert await store.hash_get_all("q") == {"a": "3", "b": "2"}
        assert await store.hash_delete("q", "a") is True
        assert await store.hash_delete("q", "a") is False
        assert await store.hash_get_all("other") == {}

    @pytest.mark.asyncio
    async def test_get_all_returns_a_copy(self, store):
        await store.hash_set("q", "a", "1")

        snapshot = await store.hash_get_all("q")
        snapshot["b"] = "2"

        assert await store.hash_get_all("q") == {"a": "1"}


class TestFallbackStore:
    @pytest.mark.asyncio
    async def test_degrades_on_first_failure(self, caplog):
        primary = FailingStore()
        store = FallbackStore(primary, MemoryStore())
        assert store.backend_name == "redis"

        with caplog.at_level(logging.WARNING):
            await store.hash_set("q", "a", "1")
            assert await store.hash_get("q", "a") == "1"
            assert await store.hash_get_all("q") == {"a": "1"}

        assert store.degraded
        assert store.backend_name == "memory"
        assert primary.calls == 1
        warnings = [r for r in caplog.records if "Falling back" in r.getMessage()]
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_healthy_primary_is_used(self):
        primary = MemoryStore()
        store = FallbackStore(primary)

        await store.hash_set("q", "a", "1")

        assert await primary.hash_get("q", "a") == "1"
        assert not store.degraded


class TestCreateStore:
    def test_disabled_redis_uses_memory(self):
        assert isinstance(create_store(QueueConfig(redis_disabled=True)), MemoryStore)

    def test_redis_is_wrapped_in_fallback(self):
        store = create_store(QueueConfig(redis_url="redis://localhost:6390/0"))

        assert isinstance(store, FallbackStore)
        assert isinstance(store.primary, RedisStore)
        assert store.backend_name == "redis"
