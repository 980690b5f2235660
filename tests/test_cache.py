"""
Unit tests for the response cache and cost optimizer.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_usage_gateway.core.cache import (
    DEFAULT_PROMPT_MAX_TOKENS,
    MemoryCacheStore,
    ResponseCache,
    make_cache_key,
    normalize_payload,
)
from ai_usage_gateway.core.errors import TransportError
from ai_usage_gateway.storage.cache_store import SQLiteCacheStore
from ai_usage_gateway.storage.models import CacheEntry, OperationType
from conftest import FakeClock


class TestNormalization:
    """Test payload normalization and key derivation."""

    def test_whitespace_collapsed_and_trimmed(self):
        assert normalize_payload({"title": "  Hola \n\t mundo  "}) == {"title": "Hola mundo"}

    def test_truncation_suffix(self):
        assert normalize_payload("abcdefgh", max_length=4) == "abcd..."

    def test_nested_values(self):
        payload = {"terms": ["  a  b ", 3], "meta": {"x": " y "}, "n": None}
        assert normalize_payload(payload) == {"terms": ["a b", 3], "meta": {"x": "y"}, "n": None}

    def test_key_is_deterministic(self):
        """Whitespace-only differences and key order map to the same key."""
        first = normalize_payload({"title": "Hola  mundo", "content": "texto"})
        second = normalize_payload({"content": " texto ", "title": "Hola mundo"})
        assert make_cache_key("categorize", first) == make_cache_key(OperationType.CATEGORIZE, second)

    def test_key_separates_operations(self):
        payload = normalize_payload({"query": "inflación"})
        key = make_cache_key("search", payload)
        assert key.startswith("ai_cache:search:")
        assert key != make_cache_key("categorize", payload)

    def test_key_separates_content(self):
        assert make_cache_key("search", {"query": "a"}) != make_cache_key("search", {"query": "b"})


class TestExecuteWithOptimization:
    """Test the cache-mediated call path."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, wall_clock):
        cache = ResponseCache(now=wall_clock)
        produce = AsyncMock(return_value={"category": "economia", "confidence": 0.9})

        first = await cache.execute_with_optimization("categorize", {"title": "A  b"}, produce)
        second = await cache.execute_with_optimization("categorize", {"title": "A b"}, produce)

        produce.assert_awaited_once_with({"title": "A b"})
        assert first.cached is False
        assert second.cached is True
        assert second.value == first.value
        assert second.cache_key == first.cache_key
        assert cache.get_cache_stats()["hit_rate"] == 50.0

    @pytest.mark.asyncio
    async def test_cached_value_is_a_copy(self, wall_clock):
        """Mutating a returned value does not corrupt the cache."""
        cache = ResponseCache(now=wall_clock)
        produce = AsyncMock(return_value={"terms": ["a"], "confidence": 0.9})

        first = await cache.execute_with_optimization("search", {"query": "q"}, produce)
        first.value["terms"].append("mutated")
        second = await cache.execute_with_optimization("search", {"query": "q"}, produce)

        assert second.value["terms"] == ["a"]

    @pytest.mark.asyncio
    async def test_entries_expire(self, wall_clock):
        cache = ResponseCache(now=wall_clock, ttl_by_operation={"search": 60})
        produce = AsyncMock(return_value={"confidence": 0.9})

        await cache.execute_with_optimization("search", {"query": "q"}, produce)
        wall_clock.advance(seconds=61)
        result = await cache.execute_with_optimization("search", {"query": "q"}, produce)

        assert result.cached is False
        assert produce.await_count == 2

    @pytest.mark.asyncio
    async def test_low_confidence_not_stored(self, wall_clock):
        cache = ResponseCache(now=wall_clock)
        produce = AsyncMock(return_value={"category": "general", "confidence": 0.3})

        await cache.execute_with_optimization("categorize", {"title": "x"}, produce)
        await cache.execute_with_optimization("categorize", {"title": "x"}, produce)

        assert produce.await_count == 2

    @pytest.mark.asyncio
    async def test_fallback_on_failure_is_not_cached(self, wall_clock):
        cache = ResponseCache(now=wall_clock)
        produce = AsyncMock(side_effect=TransportError("down"))

        def fallback(raw):
            return {"category": "general", "title": raw["title"]}

        result = await cache.execute_with_optimization("categorize", {"title": "  raw  "}, produce, fallback=fallback)

        assert result.fallback is True
        assert result.cached is False
        assert result.error == "down"
        # The fallback sees the payload as the caller passed it.
        assert result.value == {"category": "general", "title": "  raw  "}
        assert cache.get_cache_stats()["entries"] == 0

    @pytest.mark.asyncio
    async def test_async_fallback(self, wall_clock):
        cache = ResponseCache(now=wall_clock)

        async def fallback(raw):
            return {"ok": True}

        result = await cache.execute_with_optimization(
            "search", {"query": "q"}, AsyncMock(side_effect=TransportError("down")), fallback=fallback
        )
        assert result.value == {"ok": True}

    @pytest.mark.asyncio
    async def test_error_without_fallback_propagates(self, wall_clock):
        cache = ResponseCache(now=wall_clock)
        with pytest.raises(TransportError):
            await cache.execute_with_optimization(
                "generate_text", {"prompt": "p"}, AsyncMock(side_effect=TransportError("down"))
            )

    @pytest.mark.asyncio
    async def test_disabled_cache_always_produces(self, wall_clock):
        cache = ResponseCache(now=wall_clock, enabled=False)
        produce = AsyncMock(return_value={"confidence": 1.0})

        await cache.execute_with_optimization("search", {"query": "q"}, produce)
        await cache.execute_with_optimization("search", {"query": "q"}, produce)

        assert produce.await_count == 2
        assert cache.get_cache_stats()["hits"] == 0

    @pytest.mark.asyncio
    async def test_store_read_failure_is_a_miss(self, wall_clock):
        store = MemoryCacheStore()
        store.get = MagicMock(side_effect=RuntimeError("store down"))
        cache = ResponseCache(store=store, now=wall_clock)
        produce = AsyncMock(return_value={"confidence": 1.0})

        result = await cache.execute_with_optimization("search", {"query": "q"}, produce)

        assert result.value == {"confidence": 1.0}
        assert cache.misses == 1


class TestExecuteBatch:
    """Test batched execution."""

    @pytest.mark.asyncio
    async def test_batches_keep_order_and_pause(self, wall_clock):
        clock = FakeClock()
        cache = ResponseCache(now=wall_clock, sleep=clock.sleep)

        async def produce(payload):
            if payload["query"] == "bad":
                raise TransportError("down")
            return {"echo": payload["query"], "confidence": 1.0}

        items = [{"query": q} for q in ("a", "b", "bad", "d", "e")]
        results = await cache.execute_batch(items, "search", produce, batch_size=2, delay=0.5)

        assert [r.value["echo"] if r.value else None for r in results] == ["a", "b", None, "d", "e"]
        assert results[2].error == "down"
        assert clock.sleeps == [0.5, 0.5]


class TestOptimizePrompt:
    """Test per-operation prompt plans."""

    def test_known_operation(self):
        plan = ResponseCache().optimize_prompt("ignored", OperationType.CATEGORIZE)
        assert plan.max_tokens == 100
        assert "JSON" in plan.prompt

    def test_unknown_operation_keeps_prompt(self):
        plan = ResponseCache().optimize_prompt("Base prompt", "translate")
        assert plan.prompt == "Base prompt"
        assert plan.max_tokens == DEFAULT_PROMPT_MAX_TOKENS


class TestMaintenance:
    """Test stats, cleanup and clear."""

    @pytest.mark.asyncio
    async def test_stats_cleanup_and_clear(self, wall_clock):
        cache = ResponseCache(now=wall_clock, ttl_by_operation={"search": 60, "categorize": 7200})
        await cache.execute_with_optimization("search", {"query": "q"}, AsyncMock(return_value={"confidence": 1}))
        await cache.execute_with_optimization("categorize", {"t": "x"}, AsyncMock(return_value={"confidence": 1}))

        stats = cache.get_cache_stats()
        assert stats["entries"] == 2
        assert stats["by_operation"] == {"search": 1, "categorize": 1}

        wall_clock.advance(seconds=120)
        assert cache.cleanup_cache() == 1
        assert cache.clear_cache() == 1
        assert cache.get_cache_stats()["misses"] == 0

    def test_memory_store_evicts_oldest(self, wall_clock):
        store = MemoryCacheStore(max_entries=2)
        now = wall_clock()
        for key in ("k1", "k2", "k3"):
            store.set(CacheEntry(key=key, operation_type="search", value={}, created_at=now,
                                 expires_at=now + timedelta(hours=1)))

        assert store.get("k1", now) is None
        assert store.get("k3", now) is not None


class TestSQLiteCacheStore:
    """Test the persistent cache backend."""

    @pytest.mark.asyncio
    async def test_survives_new_cache_instance(self, repository, wall_clock):
        produce = AsyncMock(return_value={"category": "salud", "confidence": 0.9})
        first = ResponseCache(store=SQLiteCacheStore(repository.db_path), now=wall_clock)
        await first.execute_with_optimization("categorize", {"title": "x"}, produce)

        second = ResponseCache(store=SQLiteCacheStore(repository.db_path), now=wall_clock)
        result = await second.execute_with_optimization("categorize", {"title": "x"}, produce)

        assert result.cached is True
        assert result.value == {"category": "salud", "confidence": 0.9}
        produce.assert_awaited_once()

    def test_expired_rows_purged(self, repository, wall_clock):
        store = SQLiteCacheStore(repository.db_path)
        now = wall_clock()
        store.set(CacheEntry(key="old", operation_type="search", value={"a": 1}, created_at=now,
                             expires_at=now + timedelta(seconds=10)))
        store.set(CacheEntry(key="new", operation_type="search", value={"a": 2}, created_at=now,
                             expires_at=now + timedelta(hours=1)))

        later = now + timedelta(seconds=11)
        assert store.count_by_operation(later) == {"search": 1}
        assert store.purge_expired(later) == 1
        assert store.get("new", later).value == {"a": 2}
        assert store.clear() == 1
