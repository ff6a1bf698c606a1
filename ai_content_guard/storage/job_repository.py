"""
Persistence for generation jobs, their per-item results and the content
items they are generated for.

Status transitions that can race between drainers are conditional updates;
callers learn whether they won from the affected-row count.
"""

import json
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional, Set

from .db import DEFAULT_DB_PATH, connect
from .models import (
    ContentItem,
    GenerationJob,
    GenerationResult,
    JobParams,
    JobStatus,
    from_iso,
    to_iso,
)

_JOB_COLUMNS = (
    "id, user_id, content_fingerprint, item_ids, l1, l2, level, difficulties, "
    "retry_count, max_retries, status, created_at, updated_at, not_before"
)


def _row_to_job(row: sqlite3.Row) -> GenerationJob:
    return GenerationJob(
        id=row["id"],
        user_id=row["user_id"],
        content_fingerprint=row["content_fingerprint"],
        item_ids=list(json.loads(row["item_ids"])),
        params=JobParams(
            l1=row["l1"],
            l2=row["l2"],
            level=row["level"],
            difficulties=tuple(json.loads(row["difficulties"])),
        ),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        status=JobStatus(row["status"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        not_before=from_iso(row["not_before"]) if row["not_before"] else None,
    )


class JobRepository:
    """Repository for the `generation_job` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, job: GenerationJob) -> bool:
        """Insert a new job.

        Returns:
            False if another live job for the same fingerprint already
            exists (the partial unique index rejected the row)
        """
        try:
            with connect(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO generation_job ({_JOB_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.id,
                        job.user_id,
                        job.content_fingerprint,
                        json.dumps(job.item_ids),
                        job.params.l1,
                        job.params.l2,
                        job.params.level,
                        json.dumps(list(job.params.difficulties)),
                        job.retry_count,
                        job.max_retries,
                        job.status.value,
                        to_iso(job.created_at),
                        to_iso(job.updated_at),
                        to_iso(job.not_before) if job.not_before else None,
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def get(self, job_id: str) -> Optional[GenerationJob]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM generation_job WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT status FROM generation_job WHERE id = ?", (job_id,)
            ).fetchone()
        return JobStatus(row["status"]) if row else None

    def find_latest(
        self,
        user_id: str,
        content_fingerprint: str,
        status: Optional[JobStatus] = None,
        exclude_failed: bool = False,
    ) -> Optional[GenerationJob]:
        """Most recently created job for a fingerprint, optionally filtered by status."""
        query = (
            f"SELECT {_JOB_COLUMNS} FROM generation_job "
            "WHERE user_id = ? AND content_fingerprint = ?"
        )
        params: list = [user_id, content_fingerprint]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if exclude_failed:
            query += " AND status != ?"
            params.append(JobStatus.FAILED.value)
        query += " ORDER BY created_at DESC LIMIT 1"
        with connect(self.db_path) as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_job(row) if row else None

    def next_pending(self, user_id: str, now: datetime) -> Optional[GenerationJob]:
        """Oldest pending job for a user whose retry backoff has elapsed."""
        with connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM generation_job "
                "WHERE user_id = ? AND status = ? AND (not_before IS NULL OR not_before <= ?) "
                "ORDER BY created_at ASC LIMIT 1",
                (user_id, JobStatus.PENDING.value, to_iso(now)),
            ).fetchone()
        return _row_to_job(row) if row else None

    def next_wake(self, user_id: str) -> Optional[datetime]:
        """Earliest retry time among pending jobs, if any was backed off."""
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT MIN(not_before) AS wake FROM generation_job "
                "WHERE user_id = ? AND status = ? AND not_before IS NOT NULL",
                (user_id, JobStatus.PENDING.value),
            ).fetchone()
        return from_iso(row["wake"]) if row and row["wake"] else None

    def merge_item_ids(self, job_id: str, item_ids: List[str], now: datetime) -> bool:
        """Replace a pending job's item list. Fails if the job left `pending`."""
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE generation_job SET item_ids = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (json.dumps(item_ids), to_iso(now), job_id, JobStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def claim(self, job_id: str, now: datetime) -> bool:
        """Move a job from pending to processing.

        Compare-and-swap on the status column: exactly one of several
        concurrent callers sees an affected row. A job inside its retry
        backoff cannot be claimed.
        """
        stamp = to_iso(now)
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE generation_job SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = ? AND (not_before IS NULL OR not_before <= ?)",
                (JobStatus.PROCESSING.value, stamp, job_id, JobStatus.PENDING.value, stamp),
            )
            return cursor.rowcount == 1

    def touch(self, job_id: str, now: datetime) -> bool:
        """Refresh `updated_at` of a job this drainer is still processing."""
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE generation_job SET updated_at = ? WHERE id = ? AND status = ?",
                (to_iso(now), job_id, JobStatus.PROCESSING.value),
            )
            return cursor.rowcount == 1

    def reset_stale(
        self,
        user_id: str,
        stale_before: datetime,
        now: datetime,
        job_id: Optional[str] = None,
    ) -> int:
        """Return processing jobs last touched before `stale_before` to pending."""
        query = (
            "UPDATE generation_job SET status = ?, updated_at = ? "
            "WHERE user_id = ? AND status = ? AND updated_at < ?"
        )
        params: list = [
            JobStatus.PENDING.value,
            to_iso(now),
            user_id,
            JobStatus.PROCESSING.value,
            to_iso(stale_before),
        ]
        if job_id is not None:
            query += " AND id = ?"
            params.append(job_id)
        with connect(self.db_path) as conn:
            return conn.execute(query, params).rowcount

    def mark_completed(self, job_id: str, now: datetime) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE generation_job SET status = ?, updated_at = ? WHERE id = ?",
                (JobStatus.COMPLETED.value, to_iso(now), job_id),
            )

    def mark_failed(
        self, job_id: str, now: datetime, retry: bool, not_before: Optional[datetime] = None
    ) -> None:
        """Mark a job failed and, when `retry` is set, requeue it.

        Both transitions run in one transaction so no other connection ever
        observes the intermediate `failed` row of a job that will be retried.
        A requeued job is not claimable before `not_before`.
        """
        stamp = to_iso(now)
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE generation_job SET status = ?, updated_at = ? WHERE id = ?",
                (JobStatus.FAILED.value, stamp, job_id),
            )
            if retry:
                conn.execute(
                    "UPDATE generation_job SET status = ?, retry_count = retry_count + 1, "
                    "updated_at = ?, not_before = ? WHERE id = ? AND status = ?",
                    (
                        JobStatus.PENDING.value,
                        stamp,
                        to_iso(not_before) if not_before else None,
                        job_id,
                        JobStatus.FAILED.value,
                    ),
                )

    def delete_failed(
        self,
        user_id: str,
        content_fingerprint: Optional[str] = None,
        created_before: Optional[datetime] = None,
    ) -> int:
        query = "DELETE FROM generation_job WHERE user_id = ? AND status = ?"
        params: list = [user_id, JobStatus.FAILED.value]
        if content_fingerprint is not None:
            query += " AND content_fingerprint = ?"
            params.append(content_fingerprint)
        if created_before is not None:
            query += " AND created_at < ?"
            params.append(to_iso(created_before))
        with connect(self.db_path) as conn:
            return conn.execute(query, params).rowcount

    def list_jobs(self, user_id: str, status: Optional[JobStatus] = None) -> List[GenerationJob]:
        query = f"SELECT {_JOB_COLUMNS} FROM generation_job WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at ASC"
        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]


class ResultRepository:
    """Repository for the `generation_result` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def ready_item_ids(
        self, user_id: str, content_fingerprint: str, include_placeholders: bool = False
    ) -> Set[str]:
        query = (
            "SELECT item_id FROM generation_result "
            "WHERE user_id = ? AND content_fingerprint = ? AND status = 'ready'"
        )
        if not include_placeholders:
            query += " AND is_placeholder = 0"
        with connect(self.db_path) as conn:
            rows = conn.execute(query, (user_id, content_fingerprint)).fetchall()
        return {row["item_id"] for row in rows}

    def upsert(self, result: GenerationResult, now: datetime) -> None:
        stamp = to_iso(now)
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO generation_result
                    (user_id, content_fingerprint, item_id, content, status,
                     is_placeholder, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, content_fingerprint, item_id) DO UPDATE SET
                    content = excluded.content,
                    status = excluded.status,
                    is_placeholder = excluded.is_placeholder,
                    updated_at = excluded.updated_at
                """,
                (
                    result.user_id,
                    result.content_fingerprint,
                    result.item_id,
                    json.dumps(result.content),
                    result.status,
                    int(result.is_placeholder),
                    stamp,
                    stamp,
                ),
            )

    def list_ready(self, user_id: str, content_fingerprint: str) -> List[GenerationResult]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT user_id, content_fingerprint, item_id, content, status,
                       is_placeholder, created_at
                FROM generation_result
                WHERE user_id = ? AND content_fingerprint = ? AND status = 'ready'
                ORDER BY created_at ASC
                """,
                (user_id, content_fingerprint),
            ).fetchall()
        return [
            GenerationResult(
                user_id=row["user_id"],
                content_fingerprint=row["content_fingerprint"],
                item_id=row["item_id"],
                content=json.loads(row["content"]),
                status=row["status"],
                is_placeholder=bool(row["is_placeholder"]),
                created_at=from_iso(row["created_at"]),
            )
            for row in rows
        ]

    def latest_status(self, user_id: str, content_fingerprint: str) -> Optional[str]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT status FROM generation_result
                WHERE user_id = ? AND content_fingerprint = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, content_fingerprint),
            ).fetchone()
        return row["status"] if row else None


class ItemRepository:
    """Repository for the `content_item` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert(self, user_id: str, items: Iterable[ContentItem]) -> None:
        with connect(self.db_path) as conn:
            for item in items:
                conn.execute(
                    "INSERT OR REPLACE INTO content_item (user_id, item_id, text, translation, context) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, item.item_id, item.text, item.translation, item.context),
                )

    def load(self, user_id: str, item_ids: List[str]) -> List[ContentItem]:
        """Load items in the order of `item_ids`. Unknown ids are skipped; callers report them."""
        if not item_ids:
            return []
        placeholders = ", ".join("?" for _ in item_ids)
        with connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT item_id, text, translation, context FROM content_item "
                f"WHERE user_id = ? AND item_id IN ({placeholders})",
                [user_id, *item_ids],
            ).fetchall()
        by_id = {
            row["item_id"]: ContentItem(
                item_id=row["item_id"],
                text=row["text"],
                translation=row["translation"],
                context=row["context"],
            )
            for row in rows
        }
        return [by_id[item_id] for item_id in item_ids if item_id in by_id]
