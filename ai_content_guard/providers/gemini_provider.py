"""
Google Gemini provider over the Generative Language REST API.

Requests go through the same HTTP transport as machine translation; token
counts come from the `usageMetadata` block of each reply.
"""

import logging
from typing import Any, Dict, Optional

from ..core.errors import ProviderError
from ..core.pricing import ProviderProfile
from ..core.retry import call_with_retry
from ..core.token_counter import TokenUsage
from .base import ContentProvider, ProviderRequest, ProviderResponse, Transport

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiProvider(ContentProvider):
    """LLM provider backed by Gemini `generateContent`."""

    def __init__(
        self,
        profile: ProviderProfile,
        model: str,
        transport: Transport,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        governor=None,
        max_retries: int = 3,
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        super().__init__(profile, governor)
        self.model = model
        self.transport = transport
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.max_retries = max_retries

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    async def response(self, request: ProviderRequest) -> ProviderResponse:
        if not request.prompt:
            raise ValueError("prompt is required and cannot be empty")

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        }
        if request.system:
            payload["systemInstruction"] = {"parts": [{"text": request.system}]}
        generation: Dict[str, Any] = {}
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if generation:
            payload["generationConfig"] = generation

        headers = {"x-goog-api-key": self.api_key} if self.api_key else None
        data = await call_with_retry(
            lambda: self.transport.send(self.endpoint, payload, headers), max_retries=self.max_retries
        )
        return ProviderResponse(
            text=self._extract_text(data),
            usage=self._extract_usage(data),
            provider=self.name,
            raw={"model": self.model},
        )

    async def test_connection(self) -> bool:
        try:
            await self.response(ProviderRequest(prompt="Hello", max_tokens=1))
        except ProviderError as e:
            logger.warning("Gemini connection test failed: %s", e)
            return False
        return True

    def _extract_text(self, data: Dict[str, Any]) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as e:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                message = f"Gemini blocked the prompt: {feedback['blockReason']}"
            else:
                message = "Gemini response has no candidates"
            raise ProviderError(message, "INVALID_RESPONSE", self.name, retryable=False) from e

    def _extract_usage(self, data: Dict[str, Any]) -> TokenUsage:
        usage = data.get("usageMetadata")
        if not usage:
            raise ProviderError(
                "Gemini response missing usage information",
                "INVALID_RESPONSE",
                self.name,
                retryable=False,
            )
        return TokenUsage(
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
        )
