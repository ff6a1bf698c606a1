"""
Cost-ordered provider fallback under a shared cache and spend governor.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from ..providers.base import ContentProvider, ProviderRequest
from .cache import ResponseCache, create_cache_key
from .errors import AllProvidersExhausted, BudgetExceeded
from .governor import CostGovernor
from .pricing import calculate_cost
from .status import StatusSink, notify

logger = logging.getLogger(__name__)

Parser = Callable[[str], Any]


@dataclass(frozen=True)
class DispatchResult:
    data: Any
    provider: str
    cached: bool = False
    cost: float = 0.0
    tokens: int = 0
    latency_ms: float = 0.0


class FallbackDispatcher:
    """Tries providers cheapest first until one returns parseable output.

    The order is fixed at construction. A provider is skipped when the
    governor denies it; any exception from the call or the parser moves on to
    the next provider. Retries of a single provider's transient errors are the
    provider's own business.

    Identical concurrent dispatches in this process share one in-flight call.
    """

    def __init__(
        self,
        providers: Sequence[ContentProvider],
        cache: ResponseCache,
        governor: CostGovernor,
        status_sink: Optional[StatusSink] = None,
        namespace: str = "dispatcher",
    ):
        if not providers:
            raise ValueError("at least one provider is required")
        self.providers = sorted(providers, key=lambda p: p.profile.unit_cost)
        self.cache = cache
        self.governor = governor
        self.status_sink = status_sink
        self.namespace = namespace
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def provider_order(self):
        return [p.name for p in self.providers]

    async def dispatch(
        self,
        method: str,
        params: Mapping[str, Any],
        request: ProviderRequest,
        parser: Parser,
    ) -> DispatchResult:
        """Serve `method` for `params`, from cache or the first provider that succeeds.

        Args:
            method: Operation name, part of the cache key (e.g. "translate")
            params: Logical request inputs, hashed into the cache key
            request: What to send to providers on a cache miss
            parser: Strict extractor; raising means the provider failed

        Raises:
            AllProvidersExhausted: If every provider was skipped or failed
        """
        key = create_cache_key(self.namespace, method, params)
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight %s request", method)
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._dispatch(key, method, request, parser))
        self._in_flight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    async def _dispatch(
        self, key: str, method: str, request: ProviderRequest, parser: Parser
    ) -> DispatchResult:
        entry = await self.cache.get_entry(key)
        if entry is not None:
            return DispatchResult(data=entry.data, provider=entry.provider, cached=True)

        task_id = f"{method}-{uuid.uuid4().hex[:8]}"
        notify(self.status_sink, "task_started", task_id, method)

        errors: Dict[str, Exception] = {}
        for provider in self.providers:
            name = provider.name
            estimate = provider.estimate_usage(request)
            estimated_cost = calculate_cost(provider.profile, estimate)
            decision = await self.governor.check_usage(name, estimated_cost, estimate.billable_units)
            if not decision.allowed:
                logger.info("Skipping %s for %s: %s", name, method, decision.reason)
                errors[name] = BudgetExceeded(name, decision.reason)
                continue

            started = time.perf_counter()
            try:
                response = await provider.response(request)
                data = parser(response.text)
            except Exception as e:
                logger.warning("Provider %s failed for %s: %s", name, method, e)
                errors[name] = e
                continue
            latency_ms = (time.perf_counter() - started) * 1000

            cost = calculate_cost(provider.profile, response.usage)
            tokens = response.usage.billable_units
            await self.governor.record_usage(name, method, tokens, cost)
            await self.cache.set(key, data, name, method)
            notify(self.status_sink, "task_completed", task_id, f"served by {name}")
            return DispatchResult(
                data=data,
                provider=name,
                cost=cost,
                tokens=tokens,
                latency_ms=latency_ms,
            )

        exhausted = AllProvidersExhausted(errors, method)
        notify(self.status_sink, "task_failed", task_id, str(exhausted))
        raise exhausted
