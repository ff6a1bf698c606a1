"""
Adaptive provider selection for the low-latency lookup path.

The tracker keeps per-provider success and latency statistics; the selector
turns them into a weighted random primary/fallback pair once every candidate
has enough samples, and picks uniformly at random before that.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from ..providers.base import ContentProvider, ProviderRequest
from .cache import ResponseCache, create_cache_key
from .errors import AllProvidersExhausted, BudgetExceeded, ProviderError, TIMEOUT
from .governor import CostGovernor
from .pricing import calculate_cost

logger = logging.getLogger(__name__)

MIN_SAMPLES = 15
EMA_ALPHA = 0.3
SUCCESS_WEIGHT = 0.6
SPEED_WEIGHT = 0.4
HISTORY_SIZE = 50
DEFAULT_TIMEOUT = 30.0
QUICK_CACHE_NAMESPACE = "quick-translation"


@dataclass
class ProviderPerformanceStats:
    provider: str
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    success_count: int = 0
    failure_count: int = 0
    ema_response_time: Optional[float] = None
    success_rate: float = 0.0
    combined_score: float = 0.0
    weight: float = 0.0

    @property
    def total_samples(self) -> int:
        return self.success_count + self.failure_count


class ProviderPerformanceTracker:
    """Rolling success/latency statistics per provider.

    A sample is any completed attempt. Latency only comes from successful
    attempts; the EMA is seeded with the first one.
    """

    def __init__(self, providers: Sequence[str] = (), min_samples: int = MIN_SAMPLES, alpha: float = EMA_ALPHA):
        if not 0 < alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self.min_samples = min_samples
        self.alpha = alpha
        self._stats: Dict[str, ProviderPerformanceStats] = {}
        for name in providers:
            self.stats(name)

    def stats(self, provider: str) -> ProviderPerformanceStats:
        if provider not in self._stats:
            self._stats[provider] = ProviderPerformanceStats(provider=provider)
        return self._stats[provider]

    def all_stats(self) -> Dict[str, ProviderPerformanceStats]:
        return dict(self._stats)

    def record(self, provider: str, latency_ms: Optional[float], success: bool) -> None:
        stats = self.stats(provider)
        if success:
            stats.success_count += 1
            if latency_ms is not None:
                stats.response_times.append(latency_ms)
                if stats.ema_response_time is None:
                    stats.ema_response_time = latency_ms
                else:
                    stats.ema_response_time = (
                        self.alpha * latency_ms + (1 - self.alpha) * stats.ema_response_time
                    )
        else:
            stats.failure_count += 1
        stats.success_rate = stats.success_count / stats.total_samples

        tracked = list(self._stats)
        if self.has_minimum_samples(tracked):
            self.weights(tracked)

    def has_minimum_samples(self, candidates: Sequence[str]) -> bool:
        return all(self.stats(name).total_samples >= self.min_samples for name in candidates)

    def weights(self, candidates: Sequence[str]) -> Dict[str, float]:
        """Recompute combined scores and normalized weights among `candidates`."""
        emas = [
            self.stats(name).ema_response_time
            for name in candidates
            if self.stats(name).ema_response_time is not None
        ]
        fastest = min(emas) if emas else None
        slowest = max(emas) if emas else None

        for name in candidates:
            stats = self.stats(name)
            if stats.ema_response_time is None:
                speed = 0.0
            elif slowest == fastest:
                speed = 0.5
            else:
                speed = (slowest - stats.ema_response_time) / (slowest - fastest)
            stats.combined_score = stats.success_rate * SUCCESS_WEIGHT + speed * SPEED_WEIGHT

        total = sum(self.stats(name).combined_score for name in candidates)
        result = {}
        for name in candidates:
            stats = self.stats(name)
            stats.weight = stats.combined_score / total if total > 0 else 1.0 / len(candidates)
            result[name] = stats.weight
        return result

    def reset(self) -> None:
        for name in list(self._stats):
            self._stats[name] = ProviderPerformanceStats(provider=name)


class AdaptiveProviderSelector:
    """Chooses a (primary, fallback) pair among interchangeable providers."""

    def __init__(self, tracker: ProviderPerformanceTracker, rng: Optional[random.Random] = None):
        self.tracker = tracker
        self._rng = rng or random.Random()

    def select(self, candidates: Sequence[str]) -> Tuple[str, Optional[str]]:
        if not candidates:
            raise ValueError("at least one candidate provider is required")
        candidates = list(candidates)

        if not self.tracker.has_minimum_samples(candidates):
            primary = self._rng.choice(candidates)
            rest = [name for name in candidates if name != primary]
            return primary, (self._rng.choice(rest) if rest else None)

        weights = self.tracker.weights(candidates)
        primary = self._weighted_choice(candidates, weights)
        rest = [name for name in candidates if name != primary]
        return primary, (self._weighted_choice(rest, weights) if rest else None)

    def _weighted_choice(self, names: List[str], weights: Mapping[str, float]) -> str:
        values = [weights.get(name, 0.0) for name in names]
        if sum(values) <= 0:
            return self._rng.choice(names)
        return self._rng.choices(names, weights=values, k=1)[0]


class QuickLookupService:
    """Low-latency translation without context.

    The primary attempt is raced against a fixed timeout; on failure a single
    fallback is tried. A timed-out call is left running; if it completes, its
    usage is still recorded because the provider bills for it.
    """

    def __init__(
        self,
        providers: Mapping[str, ContentProvider],
        selector: AdaptiveProviderSelector,
        cache: ResponseCache,
        governor: CostGovernor,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not providers:
            raise ValueError("at least one provider is required")
        self.providers = dict(providers)
        self.selector = selector
        self.tracker = selector.tracker
        self.cache = cache
        self.governor = governor
        self.timeout = timeout
        self._abandoned = set()

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        """Translate `text`, trying the selected primary then its fallback.

        Raises:
            ValueError: If source and target language are the same
            AllProvidersExhausted: If both attempts failed
        """
        if source_lang == target_lang:
            raise ValueError("quick lookup does not support explanation mode (source == target)")

        params = {"text": text, "source": source_lang, "target": target_lang}
        key = create_cache_key(QUICK_CACHE_NAMESPACE, "translate", params)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        primary, fallback = self.selector.select(list(self.providers))
        errors: Dict[str, Exception] = {}
        for name in (primary, fallback):
            if name is None:
                continue
            try:
                result = await self._attempt(name, text, source_lang, target_lang)
            except Exception as e:
                logger.warning("Quick lookup via %s failed: %s", name, e)
                errors[name] = e
                continue
            await self.cache.set(key, result, name, "translate")
            return result

        raise AllProvidersExhausted(errors, "quick lookup")

    async def _attempt(self, name: str, text: str, source_lang: str, target_lang: str) -> str:
        provider = self.providers[name]
        request = ProviderRequest(prompt=text, source_lang=source_lang, target_lang=target_lang)
        estimate = provider.estimate_cost(request)
        decision = await self.governor.check_usage(name, estimate, len(text))
        if not decision.allowed:
            raise BudgetExceeded(name, decision.reason)

        started = time.perf_counter()
        task = asyncio.ensure_future(provider.response(request))
        done, _ = await asyncio.wait({task}, timeout=self.timeout)
        if task not in done:
            self._abandon(name, provider, task)
            self.tracker.record(name, None, success=False)
            raise ProviderError(f"{name} timed out after {self.timeout}s", TIMEOUT, name)

        try:
            response = task.result()
        except Exception:
            self.tracker.record(name, None, success=False)
            raise
        latency_ms = (time.perf_counter() - started) * 1000
        self.tracker.record(name, latency_ms, success=True)

        cost = calculate_cost(provider.profile, response.usage)
        await self.governor.record_usage(name, "quick-translate", response.usage.billable_units, cost)
        return response.text

    def _abandon(self, name: str, provider: ContentProvider, task: asyncio.Future) -> None:
        settle = asyncio.get_running_loop().create_task(self._settle(name, provider, task))
        self._abandoned.add(settle)
        settle.add_done_callback(self._abandoned.discard)

    async def _settle(self, name: str, provider: ContentProvider, task: asyncio.Future) -> None:
        try:
            response = await task
        except Exception as e:
            logger.debug("Abandoned lookup via %s finished with error: %s", name, e)
            return
        cost = calculate_cost(provider.profile, response.usage)
        await self.governor.record_usage(name, "quick-translate", response.usage.billable_units, cost)

    async def flush(self) -> None:
        """Wait for timed-out calls that are still running to settle."""
        if self._abandoned:
            await asyncio.gather(*list(self._abandoned), return_exceptions=True)
