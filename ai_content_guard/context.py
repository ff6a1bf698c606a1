"""
Application context.

Builds every long-lived component once from an AppConfig and hands them out
by reference, so nothing in the package relies on module-level state.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from .config.loader import AppConfig, ProviderConfig, ProviderKind
from .core.cache import ResponseCache
from .core.content import ClozeService, StoryItemGenerator, StoryService, TranslationService
from .core.dispatcher import FallbackDispatcher
from .core.governor import CostGovernor
from .core.selector import AdaptiveProviderSelector, ProviderPerformanceTracker, QuickLookupService
from .core.status import StatusStore
from .providers import (
    ContentProvider,
    GeminiProvider,
    HttpxTransport,
    MachineTranslationProvider,
    OpenAIProvider,
)
from .queue import DeferredRequestQueue, JobQueue
from .storage.job_repository import ItemRepository, JobRepository, ResultRepository
from .storage.models import utc_now
from .storage.repository import CacheRepository, DeferredRepository, UsageRepository

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: AppConfig
    governor: CostGovernor
    cache: ResponseCache
    quick_cache: ResponseCache
    tracker: ProviderPerformanceTracker
    selector: AdaptiveProviderSelector
    status: StatusStore
    deferred: DeferredRequestQueue
    providers: Dict[str, ContentProvider]
    dispatcher: Optional[FallbackDispatcher] = None
    quick_lookup: Optional[QuickLookupService] = None
    translations: Optional[TranslationService] = None
    stories: Optional[StoryService] = None
    clozes: Optional[ClozeService] = None
    jobs: Optional[JobQueue] = None
    _transports: List[HttpxTransport] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        autostart: bool = False,
    ) -> "AppContext":
        """Wire up every component for `config`.

        Providers whose kind is an LLM feed the fallback dispatcher; machine
        translation providers feed the quick lookup path.
        """
        db = config.database
        governor = CostGovernor(
            UsageRepository(db),
            limits=[p.limit() for p in config.providers.values()],
            clock=clock,
        )
        cache = ResponseCache(
            CacheRepository(db, "response_cache"),
            ttl_seconds=config.cache.ttl_seconds,
            max_entries=config.cache.max_entries,
            cleanup_interval=config.cache.cleanup_interval,
            clock=clock,
        )
        quick_cache = ResponseCache(
            CacheRepository(db, "quick_translation_cache"),
            ttl_seconds=config.quick_cache.ttl_seconds,
            max_entries=config.quick_cache.max_entries,
            cleanup_interval=config.quick_cache.cleanup_interval,
            clock=clock,
            name="quick-translation-cache",
        )
        if rng is None and config.selector.seed is not None:
            rng = random.Random(config.selector.seed)

        providers: Dict[str, ContentProvider] = {}
        transports: List[HttpxTransport] = []
        for provider_config in config.providers.values():
            provider = _build_provider(provider_config, governor, openai_client, http_client, transports)
            providers[provider.name] = provider

        llm = [providers[name] for name in config.llm_providers()]
        mt = {name: providers[name] for name in config.translation_providers()}
        tracker = ProviderPerformanceTracker(
            list(mt), min_samples=config.selector.min_samples, alpha=config.selector.alpha
        )
        selector = AdaptiveProviderSelector(tracker, rng)
        status = StatusStore(clock=clock)

        context = cls(
            config=config,
            governor=governor,
            cache=cache,
            quick_cache=quick_cache,
            tracker=tracker,
            selector=selector,
            status=status,
            deferred=DeferredRequestQueue(DeferredRepository(db), clock=clock),
            providers=providers,
            _transports=transports,
        )

        if llm:
            dispatcher = FallbackDispatcher(llm, cache, governor, status_sink=status)
            context.dispatcher = dispatcher
            context.translations = TranslationService(dispatcher)
            context.stories = StoryService(dispatcher)
            context.clozes = ClozeService(dispatcher)
            context.jobs = JobQueue(
                config.user_id,
                JobRepository(db),
                ResultRepository(db),
                ItemRepository(db),
                StoryItemGenerator(context.stories),
                status_sink=status,
                clock=clock,
                job_interval=config.queue.job_interval,
                stale_after=timedelta(minutes=config.queue.stale_after_minutes),
                failed_retention=timedelta(minutes=config.queue.failed_retention_minutes),
                autostart=autostart,
            )
        else:
            logger.warning("No LLM providers configured; content generation disabled")

        if mt:
            context.quick_lookup = QuickLookupService(
                mt, selector, quick_cache, governor, timeout=config.selector.timeout
            )
        return context

    def start(self) -> None:
        """Start periodic cache maintenance on the running loop."""
        self.cache.start()
        self.quick_cache.start()

    async def close(self) -> None:
        if self.quick_lookup is not None:
            await self.quick_lookup.flush()
        await self.cache.close()
        await self.quick_cache.close()
        if self.jobs is not None:
            await self.jobs.wait_idle()
        for transport in self._transports:
            await transport.aclose()


def _build_provider(
    config: ProviderConfig,
    governor: CostGovernor,
    openai_client: Optional[AsyncOpenAI],
    http_client: Optional[httpx.AsyncClient],
    transports: List[HttpxTransport],
) -> ContentProvider:
    if config.kind is ProviderKind.OPENAI:
        return OpenAIProvider(
            config.profile(),
            model=config.model,
            api_key=config.api_key(),
            client=openai_client,
            governor=governor,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    transport = HttpxTransport(config.name, client=http_client, timeout=config.timeout)
    if http_client is None:
        transports.append(transport)
    if config.kind is ProviderKind.GEMINI:
        return GeminiProvider(
            config.profile(),
            model=config.model,
            transport=transport,
            api_key=config.api_key(),
            base_url=config.endpoint,
            governor=governor,
            max_retries=config.max_retries,
        )
    return MachineTranslationProvider(
        config.profile(),
        transport,
        endpoint=config.endpoint,
        wire_format=config.kind.value,
        api_key=config.api_key(),
        governor=governor,
        max_retries=config.max_retries,
    )
