"""
Tests for adaptive provider selection and the quick lookup path.
"""

import random
from collections import Counter

import pytest

from ai_content_guard.core.cache import ResponseCache
from ai_content_guard.core.errors import AllProvidersExhausted, ProviderError
from ai_content_guard.core.governor import CostGovernor
from ai_content_guard.core.pricing import UsageLimit
from ai_content_guard.core.selector import (
    AdaptiveProviderSelector,
    ProviderPerformanceTracker,
    QuickLookupService,
)
from ai_content_guard.storage.repository import CacheRepository, UsageRepository

from fakes import ScriptedProvider


class FirstChoice:
    """Random stand-in that always picks the first candidate."""

    def choice(self, seq):
        return seq[0]

    def choices(self, population, weights=None, k=1):
        return [population[0]] * k


class TestPerformanceTracker:
    """Test rolling statistics and weights."""

    def test_ema_seeded_with_first_sample(self):
        tracker = ProviderPerformanceTracker(["a"])
        tracker.record("a", 100.0, success=True)
        tracker.record("a", 200.0, success=True)
        assert tracker.stats("a").ema_response_time == pytest.approx(130.0)

    def test_failures_do_not_move_latency(self):
        tracker = ProviderPerformanceTracker(["a"])
        tracker.record("a", 100.0, success=True)
        tracker.record("a", None, success=False)
        stats = tracker.stats("a")
        assert stats.ema_response_time == 100.0
        assert stats.success_rate == 0.5
        assert stats.total_samples == 2

    def test_equal_latencies_split_evenly(self):
        tracker = ProviderPerformanceTracker(["a", "b"], min_samples=3)
        for _ in range(3):
            tracker.record("a", 100.0, success=True)
            tracker.record("b", 100.0, success=True)
        weights = tracker.weights(["a", "b"])
        assert weights["a"] == pytest.approx(0.5)
        assert weights["b"] == pytest.approx(0.5)

    def test_faster_reliable_provider_dominates(self):
        tracker = ProviderPerformanceTracker(["a", "b"])
        for _ in range(20):
            tracker.record("a", 100.0, success=True)
            tracker.record("b", None, success=False)
        weights = tracker.weights(["a", "b"])
        assert weights["a"] == pytest.approx(1.0)
        assert weights["b"] == pytest.approx(0.0)

    def test_reset(self):
        tracker = ProviderPerformanceTracker(["a"])
        tracker.record("a", 100.0, success=True)
        tracker.reset()
        assert tracker.stats("a").total_samples == 0

    def test_invalid_alpha(self):
        with pytest.raises(ValueError):
            ProviderPerformanceTracker(alpha=0)


class TestAdaptiveSelector:
    """Test primary/fallback choice."""

    def test_cold_start_is_uniform(self):
        tracker = ProviderPerformanceTracker(["a", "b"])
        selector = AdaptiveProviderSelector(tracker, rng=random.Random(42))
        counts = Counter(selector.select(["a", "b"])[0] for _ in range(10000))
        assert 4800 <= counts["a"] <= 5200

    def test_fallback_is_the_other_provider(self):
        selector = AdaptiveProviderSelector(ProviderPerformanceTracker(), rng=random.Random(1))
        primary, fallback = selector.select(["a", "b"])
        assert {primary, fallback} == {"a", "b"}

    def test_single_candidate_has_no_fallback(self):
        selector = AdaptiveProviderSelector(ProviderPerformanceTracker())
        assert selector.select(["a"]) == ("a", None)

    def test_warm_selection_prefers_better_provider(self):
        tracker = ProviderPerformanceTracker(["a", "b"])
        for _ in range(20):
            tracker.record("a", 100.0, success=True)
            tracker.record("b", None, success=False)
        selector = AdaptiveProviderSelector(tracker, rng=random.Random(7))
        for _ in range(50):
            assert selector.select(["a", "b"]) == ("a", "b")

    def test_no_candidates(self):
        with pytest.raises(ValueError):
            AdaptiveProviderSelector(ProviderPerformanceTracker()).select([])


def _service(db_path, clock, deepl, google, timeout=1.0, limits=()):
    providers = {deepl.name: deepl, google.name: google}
    tracker = ProviderPerformanceTracker(list(providers))
    cache = ResponseCache(CacheRepository(db_path, "quick_translation_cache"), clock=clock)
    governor = CostGovernor(UsageRepository(db_path), limits, clock=clock)
    selector = AdaptiveProviderSelector(tracker, rng=FirstChoice())
    return QuickLookupService(providers, selector, cache, governor, timeout=timeout)


class TestQuickLookup:
    """Test the race-and-fallback lookup path."""

    @pytest.mark.asyncio
    async def test_primary_serves(self, db_path, clock):
        deepl = ScriptedProvider("deepl", ["hello"], "0", "0", chars_rate="0.02")
        google = ScriptedProvider("google", ["hi"], "0", "0", chars_rate="0.02")
        service = _service(db_path, clock, deepl, google)

        assert await service.translate("hola", "es", "en") == "hello"
        assert google.calls == []
        assert service.tracker.stats("deepl").success_count == 1

        usage = await service.governor.get_usage_stats("deepl")
        assert usage.requests == 1
        assert usage.tokens == len("hola")
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self, db_path, clock):
        deepl = ScriptedProvider("deepl", [ProviderError("down", "HTTP_503", "deepl", 503)])
        google = ScriptedProvider("google", ["hello"])
        service = _service(db_path, clock, deepl, google)

        assert await service.translate("hola", "es", "en") == "hello"
        assert service.tracker.stats("deepl").failure_count == 1
        assert service.tracker.stats("google").success_count == 1
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_cache_hit_makes_no_calls(self, db_path, clock):
        deepl = ScriptedProvider("deepl", ["hello"])
        google = ScriptedProvider("google", ["hi"])
        service = _service(db_path, clock, deepl, google)

        await service.translate("hola", "es", "en")
        assert await service.translate("hola", "es", "en") == "hello"
        assert len(deepl.calls) == 1
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_slow_primary_times_out_to_fallback(self, db_path, clock):
        deepl = ScriptedProvider("deepl", ["late"], delay=0.3)
        google = ScriptedProvider("google", ["hello"])
        service = _service(db_path, clock, deepl, google, timeout=0.05)

        assert await service.translate("hola", "es", "en") == "hello"
        assert service.tracker.stats("deepl").failure_count == 1
        await service.flush()
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_timed_out_call_is_still_billed(self, db_path, clock):
        """A primary that answers after the timeout still lands in the ledger."""
        deepl = ScriptedProvider("deepl", ["late"], "0", "0", chars_rate="0.02", delay=0.2)
        google = ScriptedProvider("google", ["hello"], "0", "0", chars_rate="0.02")
        service = _service(db_path, clock, deepl, google, timeout=0.05)

        assert await service.translate("hola", "es", "en") == "hello"
        assert (await service.governor.get_usage_stats("deepl")).requests == 0

        await service.flush()
        usage = await service.governor.get_usage_stats("deepl")
        assert len(deepl.calls) == 1
        assert usage.requests == 1
        assert usage.tokens == len("hola")
        assert usage.cost > 0
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_budget_denial_falls_back(self, db_path, clock):
        deepl = ScriptedProvider("deepl", ["hello"], "0", "0", chars_rate="0.02")
        google = ScriptedProvider("google", ["hi"], "0", "0", chars_rate="0.02")
        service = _service(
            db_path, clock, deepl, google, limits=(UsageLimit("deepl", daily_limit=2.0, request_limit=1),)
        )
        await service.governor.record_usage("deepl", "quick-translate", 10, 0.0)

        assert await service.translate("hola", "es", "en") == "hi"
        assert deepl.calls == []
        await service.cache.flush()

    @pytest.mark.asyncio
    async def test_both_failing_raises(self, db_path, clock):
        deepl = ScriptedProvider("deepl", [ProviderError("down", "HTTP_503", "deepl", 503)])
        google = ScriptedProvider("google", [ProviderError("bad key", "HTTP_403", "google", 403)])
        service = _service(db_path, clock, deepl, google)

        with pytest.raises(AllProvidersExhausted) as exc_info:
            await service.translate("hola", "es", "en")
        assert exc_info.value.providers == ["deepl", "google"]

    @pytest.mark.asyncio
    async def test_same_language_rejected(self, db_path, clock):
        service = _service(db_path, clock, ScriptedProvider("deepl", ["x"]), ScriptedProvider("google", ["y"]))
        with pytest.raises(ValueError):
            await service.translate("hola", "es", "es")
