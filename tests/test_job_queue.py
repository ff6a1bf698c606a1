"""
Tests for the durable generation job queue.

Covers enqueue deduplication, claim safety between drainers, retry
backoff and per-item placeholders.
"""

import asyncio
import logging

import pytest

from ai_content_guard.core.retry import backoff_delay
from ai_content_guard.core.status import StatusStore, TaskState
from ai_content_guard.queue.jobs import JobQueue
from ai_content_guard.storage.job_repository import ItemRepository, JobRepository, ResultRepository
from ai_content_guard.storage.models import ContentItem, ContentStatus, JobParams, JobStatus

PARAMS = JobParams(l1="en", l2="es", level="A2", difficulties=("verbs",))


class FakeGenerator:
    """Generates a story per item; items listed in `failing` raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.generated = []

    async def generate(self, item, params):
        if item.item_id in self.failing:
            raise RuntimeError(f"generation failed for {item.item_id}")
        self.generated.append(item.item_id)
        return {"phrase": item.text, "story": f"A story about {item.text}"}

    def placeholder(self, item, params):
        return {"phrase": item.text, "story": "placeholder"}


class SleepRecorder:
    """Records delays and moves the fake clock forward by each one."""

    def __init__(self, clock=None):
        self.clock = clock
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(seconds=delay)


def _queue(db_path, clock, generator=None, **kwargs):
    ItemRepository(db_path).upsert(
        "user-1",
        [
            ContentItem("p1", "hola", "hello"),
            ContentItem("p2", "adiós", "goodbye"),
            ContentItem("p3", "gracias", "thanks"),
        ],
    )
    return JobQueue(
        "user-1",
        JobRepository(db_path),
        ResultRepository(db_path),
        ItemRepository(db_path),
        generator or FakeGenerator(),
        clock=clock,
        sleep=kwargs.pop("sleep", SleepRecorder(clock)),
        **kwargs,
    )


class TestEnqueue:
    """Test job creation and deduplication."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        assert job.status == JobStatus.PENDING

        assert await queue.process() == 1
        results = await queue.get_results("h1")
        assert sorted(r.item_id for r in results) == ["p1", "p2"]
        assert queue.jobs.get(job.id).status == JobStatus.COMPLETED
        assert await queue.get_status("h1") == ContentStatus.READY

        assert await queue.enqueue("h1", ["p1", "p2"], PARAMS) is None

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_reuses_pending_job(self, db_path, clock):
        queue = _queue(db_path, clock)
        first = await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        second = await queue.enqueue("h1", ["p2", "p1"], PARAMS)

        assert second.id == first.id
        assert len(queue.jobs.list_jobs("user-1")) == 1

    @pytest.mark.asyncio
    async def test_new_items_merge_into_pending_job(self, db_path, clock):
        queue = _queue(db_path, clock)
        first = await queue.enqueue("h1", ["p1"], PARAMS)
        merged = await queue.enqueue("h1", ["p1", "p2"], PARAMS)

        assert merged.id == first.id
        assert queue.jobs.get(first.id).item_ids == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_processing_job_is_returned_untouched(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        assert queue.jobs.claim(job.id, clock())

        again = await queue.enqueue("h1", ["p3"], PARAMS)
        assert again.id == job.id
        assert again.status == JobStatus.PROCESSING
        assert queue.jobs.get(job.id).item_ids == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_stale_processing_job_is_reset_and_merged(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        queue.jobs.claim(job.id, clock())
        clock.advance(minutes=6)

        again = await queue.enqueue("h1", ["p3"], PARAMS)
        stored = queue.jobs.get(job.id)
        assert again.id == job.id
        assert stored.status == JobStatus.PENDING
        assert stored.item_ids == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_empty_fingerprint_rejected(self, db_path, clock):
        queue = _queue(db_path, clock)
        with pytest.raises(ValueError):
            await queue.enqueue("", ["p1"], PARAMS)

    def test_user_id_required(self, db_path, clock):
        with pytest.raises(ValueError):
            JobQueue(" ", JobRepository(db_path), ResultRepository(db_path), ItemRepository(db_path), FakeGenerator())


class TestClaiming:
    """Only one drainer may own a job."""

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["p1"], PARAMS)

        wins = await asyncio.gather(
            *(asyncio.to_thread(queue.jobs.claim, job.id, clock()) for _ in range(5))
        )
        assert wins.count(True) == 1

    @pytest.mark.asyncio
    async def test_losing_drainer_does_nothing(self, db_path, clock, monkeypatch):
        generator = FakeGenerator()
        queue = _queue(db_path, clock, generator)
        job = await queue.enqueue("h1", ["p1"], PARAMS)
        snapshot = queue.jobs.get(job.id)

        # another drainer claims between our read and our claim
        queue.jobs.claim(job.id, clock())
        monkeypatch.setattr(queue.jobs, "next_pending", lambda user_id, now: snapshot)

        outcome = await queue.drain_once()
        assert not outcome.claimed
        assert outcome.status == JobStatus.PROCESSING
        assert generator.generated == []
        assert await queue.get_results("h1") == []

    @pytest.mark.asyncio
    async def test_long_job_is_not_reset_while_running(self, db_path, clock):
        """Each saved item refreshes the job so other drainers leave it alone."""
        other = _queue(db_path, clock)
        resets = []

        class SlowGenerator(FakeGenerator):
            async def generate(self, item, params):
                clock.advance(minutes=4)
                resets.append(await other.reset_stuck_jobs())
                return await super().generate(item, params)

        generator = SlowGenerator()
        queue = _queue(db_path, clock, generator)
        await queue.enqueue("h1", ["p1", "p2", "p3"], PARAMS)

        outcome = await queue.drain_once()
        assert outcome.status == JobStatus.COMPLETED
        assert resets == [0, 0, 0]
        assert generator.generated == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_drain_once_without_work(self, db_path, clock):
        assert await _queue(db_path, clock).drain_once() is None


class TestFailures:
    """Retry backoff, placeholders and cleanup."""

    def test_backoff_delay(self):
        assert backoff_delay(0) == 1.0
        assert backoff_delay(3) == 8.0
        assert backoff_delay(6) == 30.0
        with pytest.raises(ValueError):
            backoff_delay(-1)

    @pytest.mark.asyncio
    async def test_failed_job_retries_with_backoff_then_fails(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["unknown"], PARAMS)

        delays = []
        for _ in range(3):
            outcome = await queue.drain_once()
            assert outcome.status == JobStatus.PENDING
            delays.append(outcome.retry_delay)
            clock.advance(seconds=outcome.retry_delay)
        assert delays == [1.0, 2.0, 4.0]

        outcome = await queue.drain_once()
        assert outcome.status == JobStatus.FAILED
        assert outcome.retry_delay is None
        assert queue.jobs.get(job.id).retry_count == 3
        assert await queue.get_status("h1") == ContentStatus.FAILED

    @pytest.mark.asyncio
    async def test_process_sleeps_backoff_then_interval(self, db_path, clock):
        sleep = SleepRecorder(clock)
        queue = _queue(db_path, clock, sleep=sleep, job_interval=0.5)
        await queue.enqueue("h1", ["unknown"], PARAMS)

        assert await queue.process() == 4
        assert sleep.delays == [1.0, 2.0, 4.0, 0.5]

    @pytest.mark.asyncio
    async def test_backoff_holds_for_every_drainer(self, db_path, clock):
        """A job backing off after a failure is not claimable by another queue."""
        first = _queue(db_path, clock)
        second = _queue(db_path, clock)
        job = await first.enqueue("h1", ["unknown"], PARAMS)

        outcome = await first.drain_once()
        assert outcome.retry_delay == 1.0
        assert await second.drain_once() is None
        assert second.jobs.get(job.id).retry_count == 1

        clock.advance(seconds=1)
        outcome = await second.drain_once()
        assert outcome.claimed
        assert outcome.retry_delay == 2.0

    @pytest.mark.asyncio
    async def test_process_waits_for_backoff_set_elsewhere(self, db_path, clock):
        first = _queue(db_path, clock)
        sleep = SleepRecorder(clock)
        second = _queue(db_path, clock, sleep=sleep, job_interval=0.5)
        await first.enqueue("h1", ["unknown"], PARAMS, max_retries=1)
        await first.drain_once()

        assert await second.process() == 1
        assert sleep.delays == [1.0, 0.5]
        assert await second.get_status("h1") == ContentStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_items_are_logged(self, db_path, clock, caplog):
        queue = _queue(db_path, clock)
        await queue.enqueue("h1", ["p1", "ghost"], PARAMS)

        with caplog.at_level(logging.WARNING, logger="ai_content_guard.queue.jobs"):
            outcome = await queue.drain_once()

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.generated == 1
        assert "ghost" in caplog.text

    @pytest.mark.asyncio
    async def test_item_failure_stores_placeholder(self, db_path, clock):
        queue = _queue(db_path, clock, FakeGenerator(failing={"p2"}))
        await queue.enqueue("h1", ["p1", "p2"], PARAMS)

        outcome = await queue.drain_once()
        assert outcome.status == JobStatus.COMPLETED
        assert (outcome.generated, outcome.placeholders) == (1, 1)

        results = {r.item_id: r for r in await queue.get_results("h1")}
        assert results["p2"].is_placeholder
        assert results["p2"].content["story"] == "placeholder"

    @pytest.mark.asyncio
    async def test_placeholder_items_are_requeued(self, db_path, clock):
        generator = FakeGenerator(failing={"p2"})
        queue = _queue(db_path, clock, generator)
        await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        await queue.drain_once()

        generator.failing.clear()
        job = await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        assert job.item_ids == ["p2"]
        await queue.drain_once()

        results = {r.item_id: r for r in await queue.get_results("h1")}
        assert not results["p2"].is_placeholder

    @pytest.mark.asyncio
    async def test_cleanup_failed_jobs(self, db_path, clock):
        queue = _queue(db_path, clock)
        job = await queue.enqueue("h1", ["unknown"], PARAMS, max_retries=0)
        await queue.drain_once()

        assert await queue.cleanup_failed_jobs() == 0
        clock.advance(hours=2)
        assert await queue.cleanup_failed_jobs() == 1
        assert queue.jobs.get(job.id) is None

    @pytest.mark.asyncio
    async def test_retry_failed(self, db_path, clock):
        queue = _queue(db_path, clock)
        failed = await queue.enqueue("h1", ["p1", "unknown"], PARAMS, max_retries=0)
        queue.jobs.claim(failed.id, clock())
        queue.jobs.mark_failed(failed.id, clock(), retry=False)
        assert await queue.get_status("h1") == ContentStatus.FAILED

        job = await queue.retry_failed("h1")
        assert job.id != failed.id
        assert job.item_ids == ["p1", "unknown"]
        assert queue.jobs.get(failed.id) is None
        assert await queue.get_status("h1") == ContentStatus.GENERATING

    @pytest.mark.asyncio
    async def test_retry_failed_without_failure(self, db_path, clock):
        assert await _queue(db_path, clock).retry_failed("h1") is None


class TestStatusAndBackground:
    """Content status and autostarted draining."""

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, db_path, clock):
        queue = _queue(db_path, clock)
        assert await queue.get_status("h1") == ContentStatus.NOT_FOUND

        await queue.enqueue("h1", ["p1"], PARAMS)
        assert await queue.get_status("h1") == ContentStatus.GENERATING

        await queue.process()
        assert await queue.get_status("h1") == ContentStatus.READY

    @pytest.mark.asyncio
    async def test_autostart_drains_in_background(self, db_path, clock):
        status = StatusStore(clock=clock)
        queue = _queue(db_path, clock, autostart=True, status_sink=status)

        await queue.enqueue("h1", ["p1", "p2"], PARAMS)
        await queue.wait_idle()

        assert len(await queue.get_results("h1")) == 2
        assert [t.state for t in status.all()] == [TaskState.COMPLETED]
