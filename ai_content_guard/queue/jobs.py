"""
Durable multi-item generation jobs.

Lifecycle: pending -> processing -> completed, processing -> failed, and
failed -> pending while retries remain. Several drainers (another process,
a timer, a restart) may work the same table; ownership of a job is decided
by a conditional status update, never by an in-process lock.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from ..core.errors import ContentGuardError
from ..core.retry import backoff_delay
from ..core.status import StatusSink, notify
from ..storage.job_repository import ItemRepository, JobRepository, ResultRepository
from ..storage.models import (
    ContentItem,
    ContentStatus,
    GenerationJob,
    GenerationResult,
    JobParams,
    JobStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=5)
FAILED_RETENTION = timedelta(hours=1)
JOB_INTERVAL = 1.0
DEFAULT_MAX_RETRIES = 3
_ENQUEUE_ATTEMPTS = 3


class ItemGenerator(Protocol):
    async def generate(self, item: ContentItem, params: JobParams) -> Dict[str, Any]:
        ...

    def placeholder(self, item: ContentItem, params: JobParams) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class DrainOutcome:
    """What one drain attempt did.

    `claimed` is False when another drainer won the job; `retry_delay` is set
    when a failed job went back to pending.
    """
    job_id: str
    status: Optional[JobStatus]
    claimed: bool = True
    retry_delay: Optional[float] = None
    generated: int = 0
    placeholders: int = 0


class JobQueue:
    """Queue of generation jobs for one user."""

    def __init__(
        self,
        user_id: str,
        jobs: JobRepository,
        results: ResultRepository,
        items: ItemRepository,
        generator: ItemGenerator,
        status_sink: Optional[StatusSink] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        job_interval: float = JOB_INTERVAL,
        stale_after: timedelta = STALE_AFTER,
        failed_retention: timedelta = FAILED_RETENTION,
        autostart: bool = False,
    ):
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        self.user_id = user_id
        self.jobs = jobs
        self.results = results
        self.items = items
        self.generator = generator
        self.status_sink = status_sink
        self.job_interval = job_interval
        self.stale_after = stale_after
        self.failed_retention = failed_retention
        self.autostart = autostart
        self._clock = clock
        self._sleep = sleep
        self._drain_task: Optional[asyncio.Task] = None

    async def enqueue(
        self,
        content_fingerprint: str,
        item_ids: Sequence[str],
        params: JobParams,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> Optional[GenerationJob]:
        """Request generation for `item_ids` of one piece of content.

        Items that already have generated results are dropped. The remainder
        joins the content's live job if there is one, otherwise a new pending
        job is created.

        Returns:
            The job that will produce the items, or None when nothing is left
            to generate
        """
        if not content_fingerprint:
            raise ValueError("content_fingerprint is required and cannot be empty")
        requested = list(dict.fromkeys(item_ids))
        if not requested:
            return None

        ready = await asyncio.to_thread(
            self.results.ready_item_ids, self.user_id, content_fingerprint
        )
        needed = [item_id for item_id in requested if item_id not in ready]
        if not needed:
            logger.debug("All %d items of %s already generated", len(requested), content_fingerprint)
            return None

        for _ in range(_ENQUEUE_ATTEMPTS):
            job = await self._enqueue_once(content_fingerprint, needed, params, max_retries)
            if job is not None:
                return job
        raise ContentGuardError(f"Could not enqueue generation for {content_fingerprint}")

    async def _enqueue_once(
        self, fingerprint: str, needed: List[str], params: JobParams, max_retries: int
    ) -> Optional[GenerationJob]:
        now = self._clock()
        existing = await asyncio.to_thread(
            self.jobs.find_latest, self.user_id, fingerprint, None, True
        )

        if existing is not None and existing.status == JobStatus.PROCESSING:
            if not existing.is_stale(now, self.stale_after):
                logger.debug("Job %s already processing %s", existing.id, fingerprint)
                return existing
            reset = await asyncio.to_thread(
                self.jobs.reset_stale, self.user_id, now - self.stale_after, now, existing.id
            )
            if not reset:
                return None
            logger.info("Reset stale job %s to pending", existing.id)
            existing.status = JobStatus.PENDING

        if existing is not None and existing.status == JobStatus.PENDING:
            new_ids = [item_id for item_id in needed if item_id not in existing.item_ids]
            if not new_ids:
                self._kick()
                return existing
            merged = existing.item_ids + new_ids
            if not await asyncio.to_thread(self.jobs.merge_item_ids, existing.id, merged, now):
                return None
            logger.info("Added %d items to pending job %s", len(new_ids), existing.id)
            existing.item_ids = merged
            existing.updated_at = now
            self._kick()
            return existing

        job = GenerationJob(
            id=uuid.uuid4().hex,
            user_id=self.user_id,
            content_fingerprint=fingerprint,
            item_ids=list(needed),
            params=params,
            retry_count=0,
            max_retries=max_retries,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        if not await asyncio.to_thread(self.jobs.insert, job):
            # A concurrent enqueue created the live job first; merge into it
            return None
        logger.info("Queued job %s for %s (%d items)", job.id, fingerprint, len(needed))
        self._kick()
        return job

    async def reset_stuck_jobs(self) -> int:
        now = self._clock()
        count = await asyncio.to_thread(
            self.jobs.reset_stale, self.user_id, now - self.stale_after, now
        )
        if count:
            logger.info("Reset %d stuck jobs to pending", count)
        return count

    async def cleanup_failed_jobs(self) -> int:
        cutoff = self._clock() - self.failed_retention
        count = await asyncio.to_thread(self.jobs.delete_failed, self.user_id, None, cutoff)
        if count:
            logger.info("Deleted %d old failed jobs", count)
        return count

    async def drain_once(self) -> Optional[DrainOutcome]:
        """Claim and run the oldest pending job.

        Returns:
            None when no job is pending
        """
        await self.reset_stuck_jobs()
        job = await asyncio.to_thread(self.jobs.next_pending, self.user_id, self._clock())
        if job is None:
            return None

        if not await asyncio.to_thread(self.jobs.claim, job.id, self._clock()):
            current = await asyncio.to_thread(self.jobs.get_status, job.id)
            logger.info(
                "Job %s claimed by another drainer (status %s)",
                job.id,
                current.value if current else "deleted",
            )
            return DrainOutcome(job_id=job.id, status=current, claimed=False)

        job.status = JobStatus.PROCESSING
        return await self._execute(job)

    async def _execute(self, job: GenerationJob) -> DrainOutcome:
        task_id = f"job-{job.id}"
        notify(
            self.status_sink,
            "task_started",
            task_id,
            f"Generating {len(job.item_ids)} items for {job.content_fingerprint}",
        )
        generated = placeholders = 0
        try:
            if not job.item_ids:
                raise ContentGuardError(f"Job {job.id} has no items")
            items = await asyncio.to_thread(self.items.load, self.user_id, job.item_ids)
            if not items:
                raise ContentGuardError(f"No items found for job {job.id}")
            found = {item.item_id for item in items}
            missing = [item_id for item_id in job.item_ids if item_id not in found]
            if missing:
                logger.warning(
                    "Job %s skips %d unknown items: %s", job.id, len(missing), ", ".join(missing)
                )

            for item in items:
                try:
                    content = await self.generator.generate(item, job.params)
                    is_placeholder = False
                except Exception as e:
                    logger.warning("Generation failed for item %s of job %s: %s", item.item_id, job.id, e)
                    content = self.generator.placeholder(item, job.params)
                    is_placeholder = True

                result = GenerationResult(
                    user_id=self.user_id,
                    content_fingerprint=job.content_fingerprint,
                    item_id=item.item_id,
                    content=content,
                    is_placeholder=is_placeholder,
                )
                now = self._clock()
                await asyncio.to_thread(self.results.upsert, result, now)
                # keeps a long job from looking stale to other drainers
                await asyncio.to_thread(self.jobs.touch, job.id, now)
                if is_placeholder:
                    placeholders += 1
                else:
                    generated += 1

            await asyncio.to_thread(self.jobs.mark_completed, job.id, self._clock())
        except Exception as e:
            retry = job.retry_count < job.max_retries
            delay = backoff_delay(job.retry_count) if retry else None
            now = self._clock()
            not_before = now + timedelta(seconds=delay) if retry else None
            await asyncio.to_thread(self.jobs.mark_failed, job.id, now, retry, not_before)
            notify(self.status_sink, "task_failed", task_id, str(e))
            if retry:
                logger.warning(
                    "Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    job.id,
                    job.retry_count + 1,
                    job.max_retries,
                    delay,
                    e,
                )
                return DrainOutcome(job_id=job.id, status=JobStatus.PENDING, retry_delay=delay)
            logger.error("Job %s failed permanently: %s", job.id, e)
            return DrainOutcome(job_id=job.id, status=JobStatus.FAILED)

        logger.info(
            "Job %s completed: %d generated, %d placeholders", job.id, generated, placeholders
        )
        notify(self.status_sink, "task_completed", task_id, f"{generated} items generated")
        return DrainOutcome(
            job_id=job.id,
            status=JobStatus.COMPLETED,
            generated=generated,
            placeholders=placeholders,
        )

    async def process(self) -> int:
        """Drain until no pending job is left.

        Sleeps `job_interval` between jobs and the backoff delay after a
        failed attempt that will be retried. When only backed-off jobs are
        left, sleeps until the earliest of them may run.

        Returns:
            Number of jobs this drainer claimed
        """
        processed = 0
        while True:
            outcome = await self.drain_once()
            if outcome is None:
                wake = await asyncio.to_thread(self.jobs.next_wake, self.user_id)
                if wake is None:
                    return processed
                await self._sleep(max(0.0, (wake - self._clock()).total_seconds()))
                continue
            if not outcome.claimed:
                continue
            processed += 1
            await self._sleep(outcome.retry_delay or self.job_interval)

    async def retry_failed(self, content_fingerprint: str) -> Optional[GenerationJob]:
        """Drop the failed job for `content_fingerprint` and queue it again."""
        failed = await asyncio.to_thread(
            self.jobs.find_latest, self.user_id, content_fingerprint, JobStatus.FAILED
        )
        if failed is None:
            logger.info("No failed job for %s", content_fingerprint)
            return None
        await asyncio.to_thread(self.jobs.delete_failed, self.user_id, content_fingerprint)
        return await self.enqueue(
            content_fingerprint, failed.item_ids, failed.params, failed.max_retries
        )

    async def get_results(self, content_fingerprint: str) -> List[GenerationResult]:
        return await asyncio.to_thread(self.results.list_ready, self.user_id, content_fingerprint)

    async def get_status(self, content_fingerprint: str) -> ContentStatus:
        result_status = await asyncio.to_thread(
            self.results.latest_status, self.user_id, content_fingerprint
        )
        if result_status is not None:
            return ContentStatus.READY if result_status == "ready" else ContentStatus.FAILED

        job = await asyncio.to_thread(self.jobs.find_latest, self.user_id, content_fingerprint)
        if job is None:
            return ContentStatus.NOT_FOUND
        if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            return ContentStatus.GENERATING
        return ContentStatus.FAILED

    async def wait_idle(self) -> None:
        """Wait for a background drain started by `enqueue` to finish."""
        if self._drain_task is not None:
            await self._drain_task

    def _kick(self) -> None:
        if not self.autostart:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._background_drain())

    async def _background_drain(self) -> None:
        try:
            await self.cleanup_failed_jobs()
            await self.process()
        except Exception:
            logger.exception("Background drain failed")
