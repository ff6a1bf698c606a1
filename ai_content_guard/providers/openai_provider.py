"""
OpenAI chat-completions provider.

Wraps AsyncOpenAI with the package's retry wrapper and maps SDK errors onto
ProviderError so the dispatcher can classify them.
"""

import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from ..core.errors import NETWORK_ERROR, TIMEOUT, ProviderError
from ..core.pricing import ProviderProfile
from ..core.retry import call_with_retry
from ..core.token_counter import TokenUsage
from .base import ContentProvider, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)


class OpenAIProvider(ContentProvider):
    """LLM provider backed by OpenAI chat completions.

    Transient failures (timeouts, connection errors, 5xx, 429) are retried
    with backoff inside `response`; anything else surfaces immediately.
    """

    def __init__(
        self,
        profile: ProviderProfile,
        model: str,
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        governor=None,
        max_retries: int = 3,
        timeout: float = 60.0,
    ):
        """Initialize the provider.

        Args:
            profile: Rates and cap of this provider
            model: OpenAI model name (required)
            api_key: API key; the SDK falls back to OPENAI_API_KEY when omitted
            client: Preconfigured client, mainly for tests
            governor: CostGovernor used for usage reporting
            max_retries: Retries for transient failures
            timeout: Per-request timeout in seconds

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        super().__init__(profile, governor)
        self.model = model
        self.max_retries = max_retries
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """SDK client, created on first use so a missing key only fails real calls."""
        if self._client is None:
            try:
                # SDK-level retries are disabled; call_with_retry owns the policy
                self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
            except openai.OpenAIError as e:
                raise ProviderError(
                    f"OpenAI client unavailable: {e}", "AUTH_ERROR", self.name, retryable=False
                ) from e
        return self._client

    async def response(self, request: ProviderRequest) -> ProviderResponse:
        if not request.prompt:
            raise ValueError("prompt is required and cannot be empty")

        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        kwargs: Dict[str, Any] = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens

        completion = await call_with_retry(
            lambda: self._create(messages, kwargs), max_retries=self.max_retries
        )

        usage = completion.usage
        if not usage:
            raise ProviderError(
                "OpenAI response missing usage information",
                "INVALID_RESPONSE",
                self.name,
                retryable=False,
            )
        if not completion.choices:
            raise ProviderError(
                "OpenAI response has no choices", "INVALID_RESPONSE", self.name, retryable=False
            )

        return ProviderResponse(
            text=completion.choices[0].message.content or "",
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            ),
            provider=self.name,
            raw={"id": completion.id, "model": self.model},
        )

    async def test_connection(self) -> bool:
        try:
            await self.client.models.list()
        except (openai.OpenAIError, ProviderError) as e:
            logger.warning("OpenAI connection test failed: %s", e)
            return False
        return True

    async def _create(self, messages: List[Dict[str, str]], kwargs: Dict[str, Any]):
        try:
            return await self.client.chat.completions.create(
                model=self.model, messages=messages, **kwargs
            )
        except openai.APITimeoutError as e:
            raise ProviderError(f"OpenAI request timed out: {e}", TIMEOUT, self.name) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"OpenAI connection failed: {e}", NETWORK_ERROR, self.name) from e
        except openai.APIStatusError as e:
            raise ProviderError(
                f"OpenAI returned {e.status_code}: {e.message}",
                f"HTTP_{e.status_code}",
                self.name,
                status_code=e.status_code,
            ) from e
