"""
Machine-translation providers reached through an HTTP transport.

Two wire formats are supported: DeepL's `/v2/translate` and Google Cloud
Translation v2. Both are billed per source character.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.errors import NETWORK_ERROR, TIMEOUT, ProviderError
from ..core.pricing import ProviderProfile
from ..core.retry import call_with_retry
from ..core.token_counter import TokenUsage
from .base import ContentProvider, ProviderRequest, ProviderResponse, Transport

logger = logging.getLogger(__name__)

WIRE_FORMATS = ("deepl", "google")


class HttpxTransport:
    """Transport over a shared httpx.AsyncClient.

    HTTP and network failures are raised as ProviderError so retry
    classification sees the status code.
    """

    def __init__(
        self,
        provider: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.provider = provider
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(
        self, endpoint: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        try:
            resp = await self._client.post(endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request to {endpoint} timed out", TIMEOUT, self.provider) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Request to {endpoint} failed: {e}", NETWORK_ERROR, self.provider) from e

        if resp.status_code >= 400:
            raise ProviderError(
                f"HTTP {resp.status_code} from {endpoint}: {resp.text[:200]}",
                f"HTTP_{resp.status_code}",
                self.provider,
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                f"Invalid JSON from {endpoint}", "INVALID_RESPONSE", self.provider, retryable=False
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()


class MachineTranslationProvider(ContentProvider):
    """Character-billed translation provider."""

    def __init__(
        self,
        profile: ProviderProfile,
        transport: Transport,
        endpoint: str,
        wire_format: str = "deepl",
        api_key: Optional[str] = None,
        governor=None,
        max_retries: int = 3,
    ):
        if wire_format not in WIRE_FORMATS:
            raise ValueError(f"wire_format must be one of: {list(WIRE_FORMATS)}")
        if not endpoint:
            raise ValueError("endpoint is required and cannot be empty")
        super().__init__(profile, governor)
        self.transport = transport
        self.endpoint = endpoint
        self.wire_format = wire_format
        self.api_key = api_key
        self.max_retries = max_retries

    async def response(self, request: ProviderRequest) -> ProviderResponse:
        if not request.target_lang:
            raise ValueError("target_lang is required for machine translation")
        if not request.prompt:
            raise ValueError("prompt is required and cannot be empty")

        endpoint, payload, headers = self._build(request)
        data = await call_with_retry(
            lambda: self.transport.send(endpoint, payload, headers), max_retries=self.max_retries
        )
        text = self._extract(data)
        return ProviderResponse(
            text=text,
            usage=TokenUsage(0, 0, characters=len(request.prompt)),
            provider=self.name,
            raw=data,
        )

    async def test_connection(self) -> bool:
        try:
            await self.response(ProviderRequest(prompt="hello", target_lang="de"))
        except ProviderError as e:
            logger.warning("%s connection test failed: %s", self.name, e)
            return False
        return True

    def _build(self, request: ProviderRequest):
        if self.wire_format == "deepl":
            payload: Dict[str, Any] = {
                "text": [request.prompt],
                "target_lang": request.target_lang.upper(),
            }
            if request.source_lang:
                payload["source_lang"] = request.source_lang.upper()
            headers = {"Authorization": f"DeepL-Auth-Key {self.api_key}"} if self.api_key else None
            return self.endpoint, payload, headers

        payload = {"q": request.prompt, "target": request.target_lang, "format": "text"}
        if request.source_lang:
            payload["source"] = request.source_lang
        endpoint = self.endpoint
        if self.api_key:
            separator = "&" if "?" in endpoint else "?"
            endpoint = f"{endpoint}{separator}key={self.api_key}"
        return endpoint, payload, None

    def _extract(self, data: Dict[str, Any]) -> str:
        try:
            if self.wire_format == "deepl":
                return data["translations"][0]["text"]
            return data["data"]["translations"][0]["translatedText"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"Unexpected {self.wire_format} response shape",
                "INVALID_RESPONSE",
                self.name,
                retryable=False,
            ) from e
