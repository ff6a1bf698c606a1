"""
Error taxonomy for content generation.

Provider failures carry enough classification for retry decisions; budget
and exhaustion errors let callers decide between fallback and deferral.
"""

from typing import Dict, Iterable, Optional

NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
RETRYABLE_CODES = frozenset({NETWORK_ERROR, TIMEOUT})
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class ContentGuardError(Exception):
    """Base class for all errors raised by this package."""


class ProviderError(ContentGuardError):
    """A provider call failed.

    Attributes:
        code: Short machine-readable failure code (e.g. "NETWORK_ERROR", "HTTP_503")
        provider: Name of the provider that failed
        status_code: HTTP status code, when the failure came from an HTTP response
        retryable: Whether repeating the same call may succeed
    """

    def __init__(
        self,
        message: str,
        code: str,
        provider: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.status_code = status_code
        if retryable is None:
            retryable = _classify(code, status_code)
        self.retryable = retryable


class BudgetExceeded(ContentGuardError):
    """A provider is over one of its caps for the current period."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class ContentParseError(ContentGuardError):
    """Provider output did not contain the expected structure."""


class StorageUnavailable(ContentGuardError):
    """The persisted store is missing a table or cannot be reached."""


class AllProvidersExhausted(ContentGuardError):
    """Every provider was skipped or failed for a request.

    Attributes:
        errors: Last error per attempted provider, in attempt order
    """

    def __init__(self, errors: Dict[str, Exception], operation: str = "request"):
        self.errors = dict(errors)
        self.operation = operation
        if self.errors:
            details = "; ".join(f"{name}: {err}" for name, err in self.errors.items())
        else:
            details = "no providers configured"
        super().__init__(f"All providers failed for {operation} ({details})")

    @property
    def providers(self) -> Iterable[str]:
        return list(self.errors)


def _classify(code: Optional[str], status_code: Optional[int]) -> bool:
    if code in RETRYABLE_CODES:
        return True
    if status_code is None:
        return False
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def is_retryable(error: BaseException) -> bool:
    """Decide whether an exception is worth retrying against the same provider.

    Explicit `retryable` flags win; otherwise network/timeout codes, 5xx,
    429 and 408 status codes are retryable and everything else is not.
    """
    flag = getattr(error, "retryable", None)
    if flag is False:
        return False
    if flag is True:
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    code = getattr(error, "code", None)
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if not isinstance(status, int):
        status = None
    return _classify(code if isinstance(code, str) else None, status)
