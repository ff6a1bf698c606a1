"""
Provider capability interface.

Every concrete provider implements `response` and `test_connection`; usage
reporting and the daily-limit check go through the shared CostGovernor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from ..core.pricing import ProviderProfile, calculate_cost
from ..core.token_counter import TokenUsage, estimate_usage
from ..storage.models import UsageLedgerEntry, daily_period, utc_now

if TYPE_CHECKING:
    from ..core.governor import CostGovernor

DEFAULT_OUTPUT_TOKENS = 512


@dataclass(frozen=True)
class ProviderRequest:
    """What to send to a provider.

    LLM providers use `prompt` (and optional `system`); machine-translation
    providers translate `prompt` from `source_lang` to `target_lang`.
    """
    prompt: str
    system: Optional[str] = None
    source_lang: Optional[str] = None
    target_lang: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    usage: TokenUsage
    provider: str
    raw: Dict[str, Any] = field(default_factory=dict)


class Transport(Protocol):
    """HTTP transport used by transport-based providers."""

    async def send(
        self, endpoint: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        ...


class ContentProvider(ABC):
    """A rate-limited, cost-metered content provider."""

    def __init__(self, profile: ProviderProfile, governor: Optional["CostGovernor"] = None):
        self.profile = profile
        self.governor = governor

    @property
    def name(self) -> str:
        return self.profile.name

    @abstractmethod
    async def response(self, request: ProviderRequest) -> ProviderResponse:
        """Send `request` and return the raw provider output.

        Raises:
            ProviderError: On transport or API failures
        """

    @abstractmethod
    async def test_connection(self) -> bool:
        """Cheap reachability/credentials check."""

    async def get_usage(self) -> UsageLedgerEntry:
        """Today's usage of this provider."""
        if self.governor is None:
            return UsageLedgerEntry(provider=self.name, period=daily_period(utc_now()))
        return await self.governor.get_usage_stats(self.name, "daily")

    async def is_within_daily_limit(self, estimated_cost: float = 0.0) -> bool:
        if self.governor is None:
            return True
        decision = await self.governor.check_usage(self.name, estimated_cost)
        return decision.allowed

    def estimate_usage(self, request: ProviderRequest) -> TokenUsage:
        if self.profile.character_billed:
            return TokenUsage(0, 0, characters=len(request.prompt))
        expected = request.max_tokens or DEFAULT_OUTPUT_TOKENS
        usage = estimate_usage(request.prompt + (request.system or ""), expected)
        return TokenUsage(usage.prompt_tokens, usage.completion_tokens)

    def estimate_cost(self, request: ProviderRequest) -> float:
        return calculate_cost(self.profile, self.estimate_usage(request))
