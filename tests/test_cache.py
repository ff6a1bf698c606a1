"""
Tests for the persisted response cache.
"""

import logging

import pytest

from ai_content_guard.core.cache import ResponseCache, create_cache_key
from ai_content_guard.storage.db import initialize_schema
from ai_content_guard.storage.repository import CacheRepository


def _cache(path, clock, **kwargs):
    return ResponseCache(CacheRepository(path), clock=clock, **kwargs)


class TestCacheKey:
    """Test cache key derivation."""

    def test_key_is_independent_of_param_order(self):
        a = create_cache_key("dispatcher", "translate", {"text": "hola", "l1": "en", "l2": "es"})
        b = create_cache_key("dispatcher", "translate", {"l2": "es", "l1": "en", "text": "hola"})
        assert a == b
        assert a.startswith("dispatcher:translate:")

    def test_key_differs_by_method_and_params(self):
        base = create_cache_key("dispatcher", "translate", {"text": "hola"})
        assert base != create_cache_key("dispatcher", "story", {"text": "hola"})
        assert base != create_cache_key("dispatcher", "translate", {"text": "adiós"})


class TestResponseCache:
    """Test get/set semantics, expiry and size enforcement."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, db_path, clock):
        cache = _cache(db_path, clock)
        assert await cache.set("k1", {"translation": "hello"}, "openai", "translate")
        assert await cache.get("k1") == {"translation": "hello"}

        entry = await cache.get_entry("k1")
        assert entry.provider == "openai"
        assert entry.method == "translate"
        await cache.flush()

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss_and_deleted(self, db_path, clock):
        cache = _cache(db_path, clock, ttl_seconds=60)
        await cache.set("k1", "value", "openai", "translate")
        clock.advance(seconds=61)

        assert await cache.get("k1") is None
        assert CacheRepository(db_path).count() == 0
        await cache.flush()

    @pytest.mark.asyncio
    async def test_clear_provider_only_removes_that_provider(self, db_path, clock):
        cache = _cache(db_path, clock)
        await cache.set("k1", "a", "openai", "translate")
        await cache.set("k2", "b", "deepl", "translate")

        assert await cache.clear_provider("openai") == 1
        assert await cache.get("k1") is None
        assert await cache.get("k2") == "b"
        await cache.flush()

    @pytest.mark.asyncio
    async def test_caches_on_separate_tables_do_not_interfere(self, db_path, clock):
        content = _cache(db_path, clock)
        quick = ResponseCache(CacheRepository(db_path, "quick_translation_cache"), clock=clock)
        await content.set("k1", "a", "openai", "translate")
        await quick.set("k1", "b", "deepl", "translate")

        assert await content.clear() == 1
        assert await quick.get("k1") == "b"
        await content.flush()
        await quick.flush()

    def test_unknown_table_rejected(self, db_path):
        with pytest.raises(ValueError):
            CacheRepository(db_path, "jobs")

    @pytest.mark.asyncio
    async def test_max_entries_enforced_after_writes(self, db_path, clock):
        cache = _cache(db_path, clock, max_entries=3)
        for i in range(5):
            clock.advance(seconds=1)
            await cache.set(f"k{i}", i, "openai", "translate")
        await cache.flush()

        assert (await cache.stats())["total_entries"] == 3
        # entries closest to expiry go first
        assert await cache.get("k0") is None
        assert await cache.get("k4") == 4

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, db_path, clock):
        cache = _cache(db_path, clock, ttl_seconds=60)
        await cache.set("old", 1, "openai", "translate")
        clock.advance(seconds=30)
        await cache.set("new", 2, "openai", "translate")
        clock.advance(seconds=40)

        stats = await cache.stats()
        assert stats == {"total_entries": 2, "expired_entries": 1}
        assert await cache.cleanup_expired() == 1
        assert await cache.get("new") == 2
        await cache.flush()


class TestCacheFailSoft:
    """Storage problems degrade to cache misses."""

    @pytest.mark.asyncio
    async def test_uninitialized_store_misses_and_logs_once(self, empty_db_path, clock, caplog):
        caplog.set_level(logging.INFO, logger="ai_content_guard")
        cache = _cache(empty_db_path, clock)

        assert await cache.get("k1") is None
        assert await cache.set("k1", "v", "openai", "translate") is False
        assert await cache.get("k1") is None

        warnings = [r for r in caplog.records if "caching disabled" in r.getMessage()]
        assert len(warnings) == 1

        initialize_schema(empty_db_path)
        assert await cache.set("k1", "v", "openai", "translate") is True
        assert any("available again" in r.getMessage() for r in caplog.records)
        await cache.flush()
