"""
Data models for storage layer.

Defines persisted records and the timestamp helpers shared by every
repository.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime so that stored strings sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def daily_period(moment: datetime) -> str:
    """Ledger key for the calendar day (UTC) containing `moment`."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


def monthly_period(moment: datetime) -> str:
    """Ledger key for the calendar month (UTC) containing `moment`."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


class JobStatus(Enum):
    """Lifecycle of a generation job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RequestKind(Enum):
    """Kinds of generation request that can be deferred."""
    TRANSLATION = "translation"
    STORY = "story"
    CLOZE = "cloze"


class ContentStatus(Enum):
    """Aggregate state of generated content for one fingerprint."""
    READY = "ready"
    GENERATING = "generating"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class UsageLedgerEntry:
    """Cumulative usage of one provider within one period.

    An entry whose period is not the current one is history: it is never
    read for admission decisions and never reset.
    """
    provider: str
    period: str
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageEvent:
    """Append-only record of one completed provider call."""
    timestamp: datetime
    provider: str
    method: str
    tokens: int
    cost: float


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    expires_at: datetime
    provider: str
    method: str

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class JobParams:
    """Locale and learner parameters a job was requested with."""
    l1: str
    l2: str
    level: str
    difficulties: Tuple[str, ...] = ()


@dataclass
class GenerationJob:
    """Durable multi-item generation job."""
    id: str
    user_id: str
    content_fingerprint: str
    item_ids: List[str]
    params: JobParams
    retry_count: int
    max_retries: int
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    # earliest time a retried job may be claimed again
    not_before: Optional[datetime] = None

    def is_stale(self, now: datetime, stale_after: timedelta) -> bool:
        """True when the job has sat in `processing` longer than `stale_after`."""
        return self.status == JobStatus.PROCESSING and now - self.updated_at > stale_after


@dataclass(frozen=True)
class GenerationResult:
    """Generated content for one item of a job."""
    user_id: str
    content_fingerprint: str
    item_id: str
    content: Dict[str, Any]
    status: str = "ready"
    is_placeholder: bool = False
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeferredRequest:
    """A request that exhausted every provider, kept for a later retry."""
    id: str
    kind: RequestKind
    payload: Dict[str, Any]
    created_at: datetime
    retry_count: int = 0
    max_retries: int = 3


@dataclass(frozen=True)
class ContentItem:
    """A vocabulary item content is generated for."""
    item_id: str
    text: str
    translation: str = ""
    context: str = ""
