"""
Tests for deferred requests awaiting a delayed retry.
"""

import pytest

from ai_content_guard.queue.deferred import DeferredRequestQueue, retry_wait
from ai_content_guard.storage.models import RequestKind
from ai_content_guard.storage.repository import DeferredRepository


def _queue(db_path, clock):
    return DeferredRequestQueue(DeferredRepository(db_path), clock=clock)


class TestDeferredRequestQueue:
    """Test eligibility windows and retry bookkeeping."""

    def test_retry_wait_doubles(self):
        assert [retry_wait(n).total_seconds() / 60 for n in range(4)] == [1, 2, 4, 8]

    @pytest.mark.asyncio
    async def test_add_and_list(self, db_path, clock):
        queue = _queue(db_path, clock)
        request_id = await queue.add_request(RequestKind.STORY, {"items": ["p1"]})

        pending = await queue.get_pending_requests()
        assert [r.id for r in pending] == [request_id]
        assert pending[0].kind == RequestKind.STORY
        assert pending[0].payload == {"items": ["p1"]}
        assert pending[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_negative_max_retries_rejected(self, db_path, clock):
        with pytest.raises(ValueError):
            await _queue(db_path, clock).add_request(RequestKind.STORY, {}, max_retries=-1)

    @pytest.mark.asyncio
    async def test_eligibility_follows_backoff(self, db_path, clock):
        queue = _queue(db_path, clock)
        request_id = await queue.add_request(RequestKind.TRANSLATION, {"text": "hola"})

        assert await queue.get_retryable_requests() == []
        clock.advance(minutes=1)
        assert [r.id for r in await queue.get_retryable_requests()] == [request_id]

        await queue.update_retry_count(request_id, 1)
        assert await queue.get_retryable_requests() == []
        clock.advance(minutes=1)
        assert len(await queue.get_retryable_requests()) == 1

    @pytest.mark.asyncio
    async def test_exhausted_requests_are_not_retryable(self, db_path, clock):
        queue = _queue(db_path, clock)
        request_id = await queue.add_request(RequestKind.CLOZE, {}, max_retries=2)
        await queue.update_retry_count(request_id, 2)
        clock.advance(hours=1)

        assert await queue.get_retryable_requests() == []
        assert await queue.cleanup_expired_requests() == 1
        assert await queue.get_pending_requests() == []

    @pytest.mark.asyncio
    async def test_process_retryable(self, db_path, clock):
        queue = _queue(db_path, clock)
        ok = await queue.add_request(RequestKind.TRANSLATION, {"text": "hola"})
        bad = await queue.add_request(RequestKind.TRANSLATION, {"text": "adiós"}, max_retries=1)
        clock.advance(minutes=1)

        async def handler(request):
            if request.payload["text"] == "adiós":
                raise RuntimeError("still failing")
            return "hello"

        summary = await queue.process_retryable(handler)
        assert summary == {"succeeded": 1, "failed": 1, "abandoned": 1}
        remaining = {r.id for r in await queue.get_pending_requests()}
        assert ok not in remaining
        assert bad not in remaining

    @pytest.mark.asyncio
    async def test_remove_request(self, db_path, clock):
        queue = _queue(db_path, clock)
        request_id = await queue.add_request(RequestKind.STORY, {})
        await queue.remove_request(request_id)
        assert await queue.get_pending_requests() == []
