"""
Test doubles: a controllable clock and scripted providers.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Union

from ai_content_guard.core.pricing import ProviderProfile
from ai_content_guard.core.token_counter import TokenUsage
from ai_content_guard.providers.base import ContentProvider, ProviderRequest, ProviderResponse


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedProvider(ContentProvider):
    """Provider that replays scripted outputs; an Exception entry is raised."""

    def __init__(
        self,
        name: str,
        outputs: List[Union[str, Exception]],
        input_rate: str = "0.001",
        output_rate: str = "0.002",
        chars_rate: str = "0",
        delay: float = 0.0,
        usage: Optional[TokenUsage] = None,
    ):
        super().__init__(
            ProviderProfile(
                name=name,
                input_cost_per_1k=Decimal(input_rate),
                output_cost_per_1k=Decimal(output_rate),
                cost_per_1k_chars=Decimal(chars_rate),
            )
        )
        self.outputs = list(outputs)
        self.delay = delay
        self.usage = usage
        self.calls: List[ProviderRequest] = []

    async def response(self, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(output, Exception):
            raise output
        if self.usage is not None:
            usage = self.usage
        elif self.profile.character_billed:
            usage = TokenUsage(0, 0, characters=len(request.prompt))
        else:
            usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        return ProviderResponse(text=output, usage=usage, provider=self.name)

    async def test_connection(self) -> bool:
        return True
