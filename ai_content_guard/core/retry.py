"""
Retry with exponential backoff for a single provider's transient errors.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY = 1.0
MAX_DELAY = 30.0


def backoff_delay(attempt: int, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Delay in seconds before retry `attempt` (0-indexed): min(base * 2**attempt, cap)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base * (2 ** attempt), cap)


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    jitter: float = 0.1,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    rng: Optional[random.Random] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `func()`, retrying retryable failures with jittered backoff.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        jitter: Fractional jitter applied to each delay (0.1 = +/-10%)
        should_retry: Classifier deciding whether an error is transient
        rng: Random source for jitter
        sleep: Awaitable sleep, replaceable in tests

    Raises:
        The last error once retries are exhausted, or the first
        non-retryable error immediately
    """
    rng = rng or random.Random()
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            delay *= 1 + rng.uniform(-jitter, jitter)
            logger.info("Retrying after %s (attempt %d/%d, %.2fs)", e, attempt + 1, max_retries, delay)
            await sleep(delay)
            attempt += 1
