"""
Content providers.

LLM and machine-translation backends behind one capability interface.
"""

from .base import ContentProvider, ProviderRequest, ProviderResponse, Transport
from .gemini_provider import GeminiProvider
from .openai_provider import OpenAIProvider
from .translation import HttpxTransport, MachineTranslationProvider

__all__ = [
    "ContentProvider",
    "ProviderRequest",
    "ProviderResponse",
    "Transport",
    "GeminiProvider",
    "OpenAIProvider",
    "HttpxTransport",
    "MachineTranslationProvider",
]
