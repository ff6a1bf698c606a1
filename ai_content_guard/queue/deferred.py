"""
Requests that exhausted every provider, held for a delayed retry.

A request becomes retryable once 2**retry_count minutes have passed since it
was created, until it has used up its retries.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List

from ..storage.models import DeferredRequest, RequestKind, utc_now
from ..storage.repository import DeferredRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

Handler = Callable[[DeferredRequest], Awaitable[Any]]


def retry_wait(retry_count: int) -> timedelta:
    """Minimum age of a request before retry number `retry_count + 1`."""
    return timedelta(minutes=2 ** retry_count)


class DeferredRequestQueue:
    def __init__(self, repository: DeferredRepository, clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self._clock = clock

    async def add_request(
        self, kind: RequestKind, payload: Dict[str, Any], max_retries: int = DEFAULT_MAX_RETRIES
    ) -> str:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        request = DeferredRequest(
            id=uuid.uuid4().hex,
            kind=RequestKind(kind),
            payload=dict(payload),
            created_at=self._clock(),
            max_retries=max_retries,
        )
        await asyncio.to_thread(self.repository.insert, request)
        logger.info("Deferred %s request %s", request.kind.value, request.id)
        return request.id

    async def get_pending_requests(self) -> List[DeferredRequest]:
        return await asyncio.to_thread(self.repository.list_all)

    async def get_retryable_requests(self) -> List[DeferredRequest]:
        now = self._clock()
        return [
            request
            for request in await self.get_pending_requests()
            if request.retry_count < request.max_retries
            and now - request.created_at >= retry_wait(request.retry_count)
        ]

    async def remove_request(self, request_id: str) -> None:
        await asyncio.to_thread(self.repository.delete, request_id)

    async def update_retry_count(self, request_id: str, retry_count: int) -> None:
        await asyncio.to_thread(self.repository.set_retry_count, request_id, retry_count)

    async def cleanup_expired_requests(self) -> int:
        """Delete requests that have used up their retries."""
        removed = await asyncio.to_thread(self.repository.delete_exhausted)
        if removed:
            logger.info("Abandoned %d deferred requests after exhausting retries", removed)
        return removed

    async def process_retryable(self, handler: Handler) -> Dict[str, int]:
        """Retry every eligible request through `handler`.

        A request is removed when the handler returns and its retry count is
        incremented when the handler raises. Exhausted requests are cleaned
        up afterwards.
        """
        succeeded = failed = 0
        for request in await self.get_retryable_requests():
            try:
                await handler(request)
            except Exception as e:
                failed += 1
                logger.warning("Retry of deferred request %s failed: %s", request.id, e)
                await self.update_retry_count(request.id, request.retry_count + 1)
                continue
            succeeded += 1
            await self.remove_request(request.id)
        abandoned = await self.cleanup_expired_requests()
        return {"succeeded": succeeded, "failed": failed, "abandoned": abandoned}
