"""
Content-addressed, TTL-bounded cache of provider responses.

Entries expire individually; an hourly sweep deletes expired rows and every
write schedules a size-enforcement pass that evicts the entries closest to
expiry once the cache holds more than `max_entries`.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Set

from ..storage.models import CacheEntry, utc_now
from ..storage.repository import CacheRepository
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_CLEANUP_INTERVAL = 60 * 60


def create_cache_key(provider: str, method: str, params: Mapping[str, Any]) -> str:
    """Derive a stable cache key from a request's logical inputs.

    Parameters are serialized with sorted keys, so two requests that differ
    only in key order share a key.
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{provider}:{method}:{digest}"


class ResponseCache:
    """Cache of provider responses backed by the `response_cache` table.

    Storage failures never propagate: reads miss, writes are dropped, and the
    condition is logged once until the store works again.
    """

    def __init__(
        self,
        repository: CacheRepository,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], datetime] = utc_now,
        name: str = "response-cache",
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.repository = repository
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self.cleanup_interval = cleanup_interval
        self.name = name
        self._clock = clock
        self._storage_down = False
        self._pending: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._enforce_lock: Optional[asyncio.Lock] = None

    async def get(self, key: str) -> Optional[Any]:
        """Cached value for `key`, or None on a miss."""
        entry = await self.get_entry(key)
        return entry.data if entry is not None else None

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            entry = await asyncio.to_thread(self.repository.get, key)
            if entry is not None and entry.is_expired(self._clock()):
                await asyncio.to_thread(self.repository.delete, key)
                entry = None
        except StorageUnavailable as e:
            self._degraded(e)
            return None
        self._recovered()
        return entry

    async def set(self, key: str, value: Any, provider: str, method: str) -> bool:
        """Store `value` under `key`; returns False if the write was dropped."""
        entry = CacheEntry(
            key=key,
            data=value,
            expires_at=self._clock() + self.ttl,
            provider=provider,
            method=method,
        )
        try:
            await asyncio.to_thread(self.repository.put, entry)
        except StorageUnavailable as e:
            self._degraded(e)
            return False
        self._recovered()
        self._schedule(self._enforce_quietly())
        return True

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.repository.delete, key)
        except StorageUnavailable as e:
            self._degraded(e)

    async def clear(self) -> int:
        try:
            removed = await asyncio.to_thread(self.repository.clear)
        except StorageUnavailable as e:
            self._degraded(e)
            return 0
        logger.info("Cleared %d entries from %s", removed, self.name)
        return removed

    async def clear_provider(self, provider: str) -> int:
        try:
            removed = await asyncio.to_thread(self.repository.clear, provider)
        except StorageUnavailable as e:
            self._degraded(e)
            return 0
        logger.info("Cleared %d %s entries from %s", removed, provider, self.name)
        return removed

    async def stats(self) -> Dict[str, int]:
        try:
            total = await asyncio.to_thread(self.repository.count)
            expired = await asyncio.to_thread(self.repository.count, self._clock())
        except StorageUnavailable as e:
            self._degraded(e)
            return {"total_entries": 0, "expired_entries": 0}
        return {"total_entries": total, "expired_entries": expired}

    async def cleanup_expired(self) -> int:
        removed = await asyncio.to_thread(self.repository.delete_expired, self._clock())
        if removed:
            logger.debug("Removed %d expired entries from %s", removed, self.name)
        return removed

    async def enforce_max_size(self) -> int:
        total = await asyncio.to_thread(self.repository.count)
        excess = total - self.max_entries
        if excess <= 0:
            return 0
        removed = await asyncio.to_thread(self.repository.delete_oldest, excess)
        logger.debug("Evicted %d entries from %s", removed, self.name)
        return removed

    def start(self) -> None:
        """Start the periodic expiry sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def flush(self) -> None:
        """Wait for scheduled maintenance passes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.flush()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired()
            except StorageUnavailable as e:
                self._degraded(e)

    async def _enforce_quietly(self) -> None:
        # passes must not overlap: each evicts the excess it counted
        if self._enforce_lock is None:
            self._enforce_lock = asyncio.Lock()
        try:
            async with self._enforce_lock:
                await self.enforce_max_size()
        except Exception:
            logger.warning("Size enforcement failed for %s", self.name, exc_info=True)

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _degraded(self, error: Exception) -> None:
        if not self._storage_down:
            logger.warning("%s unavailable, caching disabled: %s", self.name, error)
            self._storage_down = True

    def _recovered(self) -> None:
        if self._storage_down:
            logger.info("%s available again", self.name)
            self._storage_down = False
