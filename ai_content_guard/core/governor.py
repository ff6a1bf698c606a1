"""
Per-provider spend governor.

Admits or denies provider calls against daily/monthly cost caps, a daily
request limit and a daily token budget, and records completed usage in the
ledger. Usage is always read by the current period key, so a new day or
month starts at zero without deleting history.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional

from ..storage.models import UsageLedgerEntry, daily_period, monthly_period, utc_now
from ..storage.repository import UsageRepository, summarize_events
from .errors import StorageUnavailable
from .pricing import UsageLimit

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.8
MAX_ALERTS = 50


@dataclass(frozen=True)
class UsageDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    remaining_budget: float = math.inf


@dataclass(frozen=True)
class UsageAlert:
    level: str  # "warning" or "error"
    provider: str
    message: str
    timestamp: datetime
    daily_cost: float
    daily_limit: float


class CostGovernor:
    """Usage ledger with admission control.

    If the ledger store is unavailable the governor fails open: every call is
    allowed with an unlimited budget and recording is skipped. The condition
    is logged once; each later call tries the store again.
    """

    def __init__(
        self,
        repository: UsageRepository,
        limits: Iterable[UsageLimit] = (),
        clock: Callable[[], datetime] = utc_now,
        max_alerts: int = MAX_ALERTS,
    ):
        self.repository = repository
        self._limits: Dict[str, UsageLimit] = {limit.provider: limit for limit in limits}
        self._clock = clock
        self._alerts: Deque[UsageAlert] = deque(maxlen=max_alerts)
        self._storage_down = False

    async def check_usage(
        self, provider: str, estimated_cost: float, estimated_tokens: int = 0
    ) -> UsageDecision:
        """Decide whether `provider` may serve a call of the estimated size.

        Checks run in order: daily cost, monthly cost, daily requests, daily
        tokens. The first violated cap determines the reason.
        """
        limit = self._limits.get(provider)
        if limit is None:
            return UsageDecision(allowed=True)

        now = self._clock()
        try:
            daily = await asyncio.to_thread(self.repository.get_entry, provider, daily_period(now))
            monthly = None
            if limit.monthly_limit is not None:
                monthly = await asyncio.to_thread(
                    self.repository.get_entry, provider, monthly_period(now)
                )
        except StorageUnavailable as e:
            self._degraded(e)
            return UsageDecision(allowed=True)
        self._recovered()

        if daily.cost + estimated_cost > limit.daily_limit:
            return UsageDecision(
                allowed=False,
                reason=(
                    f"Daily cost limit exceeded: ${daily.cost:.4f} used + "
                    f"${estimated_cost:.4f} estimated > ${limit.daily_limit:.2f}"
                ),
                remaining_budget=max(0.0, limit.daily_limit - daily.cost),
            )
        if monthly is not None and monthly.cost + estimated_cost > limit.monthly_limit:
            return UsageDecision(
                allowed=False,
                reason=(
                    f"Monthly cost limit exceeded: ${monthly.cost:.4f} used + "
                    f"${estimated_cost:.4f} estimated > ${limit.monthly_limit:.2f}"
                ),
                remaining_budget=max(0.0, limit.daily_limit - daily.cost),
            )
        if limit.request_limit and daily.requests >= limit.request_limit:
            return UsageDecision(
                allowed=False,
                reason=f"Daily request limit reached: {daily.requests}/{limit.request_limit}",
                remaining_budget=max(0.0, limit.daily_limit - daily.cost),
            )
        if limit.token_limit > 0 and daily.tokens + estimated_tokens > limit.token_limit:
            return UsageDecision(
                allowed=False,
                reason=(
                    f"Daily token limit exceeded: {daily.tokens} used + "
                    f"{estimated_tokens} estimated > {limit.token_limit}"
                ),
                remaining_budget=max(0.0, limit.daily_limit - daily.cost),
            )

        return UsageDecision(
            allowed=True,
            remaining_budget=max(0.0, limit.daily_limit - daily.cost - estimated_cost),
        )

    async def record_usage(self, provider: str, method: str, tokens: int, cost: float) -> None:
        """Add a completed call to the day and month counters of `provider`."""
        now = self._clock()
        day = daily_period(now)
        try:
            await asyncio.to_thread(
                self.repository.add_usage,
                provider,
                method,
                (day, monthly_period(now)),
                tokens,
                cost,
                now,
            )
            entry = await asyncio.to_thread(self.repository.get_entry, provider, day)
        except StorageUnavailable as e:
            self._degraded(e)
            return
        self._recovered()
        self._check_alerts(provider, entry.cost - cost, entry.cost, now)

    async def get_usage_stats(self, provider: str, period: str = "daily") -> UsageLedgerEntry:
        if period not in ("daily", "monthly"):
            raise ValueError("period must be 'daily' or 'monthly'")
        now = self._clock()
        key = daily_period(now) if period == "daily" else monthly_period(now)
        try:
            return await asyncio.to_thread(self.repository.get_entry, provider, key)
        except StorageUnavailable as e:
            self._degraded(e)
            return UsageLedgerEntry(provider=provider, period=key)

    async def get_all_usage_stats(self) -> Dict[str, Dict[str, UsageLedgerEntry]]:
        """Daily and monthly usage for every provider with a configured limit."""
        stats = {}
        for provider in self._limits:
            stats[provider] = {
                "daily": await self.get_usage_stats(provider, "daily"),
                "monthly": await self.get_usage_stats(provider, "monthly"),
            }
        return stats

    async def get_cost_breakdown(self, days: int = 30) -> Dict:
        """Spend over the last `days` days by provider, method and day."""
        if days <= 0:
            raise ValueError("days must be > 0")
        since = self._clock() - timedelta(days=days)
        try:
            events = await asyncio.to_thread(
                self.repository.get_recent_events, None, since, 100000
            )
        except StorageUnavailable as e:
            self._degraded(e)
            events = []
        return summarize_events(events)

    def get_alerts(self) -> List[UsageAlert]:
        return list(self._alerts)

    def clear_alerts(self) -> None:
        self._alerts.clear()

    def update_limits(self, limits: Iterable[UsageLimit]) -> None:
        for limit in limits:
            self._limits[limit.provider] = limit

    def get_limits(self) -> Dict[str, UsageLimit]:
        return dict(self._limits)

    def _check_alerts(self, provider: str, before: float, after: float, now: datetime) -> None:
        limit = self._limits.get(provider)
        if limit is None:
            return
        cap = limit.daily_limit
        warn_at = cap * WARNING_THRESHOLD
        if before < warn_at <= after:
            self._alert("warning", provider, f"{provider} has used 80% of its daily limit", now, after, cap)
        if before < cap <= after:
            self._alert("error", provider, f"{provider} has reached its daily limit", now, after, cap)

    def _alert(
        self, level: str, provider: str, message: str, now: datetime, cost: float, cap: float
    ) -> None:
        self._alerts.append(UsageAlert(level, provider, message, now, cost, cap))
        log = logger.error if level == "error" else logger.warning
        log("%s ($%.4f of $%.2f)", message, cost, cap)

    def _degraded(self, error: Exception) -> None:
        if not self._storage_down:
            logger.warning("Usage ledger unavailable, spend limits not enforced: %s", error)
            self._storage_down = True

    def _recovered(self) -> None:
        if self._storage_down:
            logger.info("Usage ledger available again, spend limits enforced")
            self._storage_down = False
