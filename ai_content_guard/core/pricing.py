"""
Pricing calculations and rate management.

Handles cost computations for token-billed LLM providers and
character-billed machine-translation providers.
"""

from dataclasses import dataclass, replace
from decimal import ROUND_UP, Decimal
from typing import Optional

from .token_counter import TokenUsage

COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ProviderProfile:
    """Identity, rates and daily cap of a provider.

    Rates are per 1K units. Token-billed providers set the input/output
    rates, character-billed providers set `cost_per_1k_chars`.
    """
    name: str
    input_cost_per_1k: Decimal = Decimal("0")
    output_cost_per_1k: Decimal = Decimal("0")
    cost_per_1k_chars: Decimal = Decimal("0")
    daily_cap: float = 0.0

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("provider name is required and cannot be empty")
        for field_name in ("input_cost_per_1k", "output_cost_per_1k", "cost_per_1k_chars"):
            if getattr(self, field_name) < 0:
                raise ValueError(f"{field_name} must be >= 0")

    @property
    def unit_cost(self) -> Decimal:
        """Combined per-1K rate, used to order providers cheapest first."""
        return self.input_cost_per_1k + self.output_cost_per_1k + self.cost_per_1k_chars

    @property
    def character_billed(self) -> bool:
        return self.cost_per_1k_chars > 0 and self.input_cost_per_1k == 0 and self.output_cost_per_1k == 0

    def with_daily_cap(self, daily_cap: float) -> "ProviderProfile":
        """Copy of this profile with a cap taken from configuration."""
        return replace(self, daily_cap=daily_cap)


@dataclass(frozen=True)
class UsageLimit:
    """Per-provider spending and request caps.

    `token_limit` of 0 disables the token check (character-billed providers);
    `monthly_limit` of None means monthly spend is not tracked.
    """
    provider: str
    daily_limit: float
    monthly_limit: Optional[float] = None
    request_limit: int = 0
    token_limit: int = 0

    def __post_init__(self):
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if self.monthly_limit is not None and self.monthly_limit <= 0:
            raise ValueError("monthly_limit must be > 0")
        if self.request_limit < 0:
            raise ValueError("request_limit must be >= 0")
        if self.token_limit < 0:
            raise ValueError("token_limit must be >= 0")


def calculate_cost(profile: ProviderProfile, usage: TokenUsage) -> float:
    """Calculate total cost of a call with conservative rounding.

    Args:
        profile: Rates of the provider that served the call
        usage: Token and character usage data

    Returns:
        Total cost rounded UP to six decimal places
    """
    thousand = Decimal("1000")
    prompt_cost = (Decimal(usage.prompt_tokens) / thousand) * profile.input_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / thousand) * profile.output_cost_per_1k
    char_cost = (Decimal(usage.characters) / thousand) * profile.cost_per_1k_chars

    total_cost = prompt_cost + completion_cost + char_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
