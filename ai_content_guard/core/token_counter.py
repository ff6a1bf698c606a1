"""
Token counting and usage tracking.

Manages token and character counts for LLM and machine-translation providers.
"""

import math
from dataclasses import dataclass

# Rough characters-per-token ratio used before a provider reports real usage
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Usage data for cost calculation.

    LLM providers report prompt/completion tokens; machine-translation
    providers are billed by source characters and leave the token counts 0.
    """
    prompt_tokens: int
    completion_tokens: int
    characters: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @property
    def billable_units(self) -> int:
        """Tokens for token-billed providers, characters otherwise."""
        return self.total_tokens or self.characters


def estimate_tokens(text: str) -> int:
    """Estimate the token count of `text` before sending it."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt: str, expected_output_tokens: int = 0) -> TokenUsage:
    """Estimate usage for a prompt plus an expected completion size."""
    return TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=expected_output_tokens,
        characters=len(prompt),
    )
