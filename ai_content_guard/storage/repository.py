"""
Repository pattern for data access.

Usage ledger, response cache and deferred request persistence. Every method
opens its own short-lived connection, so repositories can be shared freely
and called from worker threads.
"""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .db import CACHE_TABLES, DEFAULT_DB_PATH, connect
from .models import (
    CacheEntry,
    DeferredRequest,
    RequestKind,
    UsageEvent,
    UsageLedgerEntry,
    from_iso,
    to_iso,
)


class UsageRepository:
    """Repository for the per-provider usage ledger.

    Two structures are maintained: `usage_ledger` holds cumulative counters
    keyed by (provider, period) and `usage_event` is an append-only log of
    completed calls used for reporting.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def check_schema(self) -> None:
        """Raise StorageUnavailable if the ledger tables are not provisioned."""
        with connect(self.db_path) as conn:
            conn.execute("SELECT 1 FROM usage_ledger LIMIT 1")
            conn.execute("SELECT 1 FROM usage_event LIMIT 1")

    def get_entry(self, provider: str, period: str) -> UsageLedgerEntry:
        """Get the ledger entry for a provider and period.

        A missing row is reported as an all-zero entry, which is how a new
        day or month starts without deleting older rows.
        """
        with connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT cost, tokens, requests, updated_at
                FROM usage_ledger
                WHERE provider = ? AND period = ?
                """,
                (provider, period),
            ).fetchone()
        if row is None:
            return UsageLedgerEntry(provider=provider, period=period)
        return UsageLedgerEntry(
            provider=provider,
            period=period,
            cost=float(row["cost"]),
            tokens=int(row["tokens"]),
            requests=int(row["requests"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def add_usage(
        self,
        provider: str,
        method: str,
        periods: Iterable[str],
        tokens: int,
        cost: float,
        timestamp: datetime,
    ) -> None:
        """Atomically add one call's usage to each period's counters.

        The increment happens inside the UPDATE clause of an upsert, so two
        concurrent writers cannot lose each other's update.

        Args:
            provider: Provider name
            method: Operation that consumed the usage (e.g. "translate")
            periods: Ledger periods to increment (typically day and month)
            tokens: Tokens or characters consumed
            cost: Cost in USD
            timestamp: When the call completed
        """
        stamp = to_iso(timestamp)
        periods = list(periods)
        with connect(self.db_path) as conn:
            for period in periods:
                conn.execute(
                    """
                    INSERT INTO usage_ledger (provider, period, cost, tokens, requests, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                    ON CONFLICT (provider, period) DO UPDATE SET
                        cost = cost + excluded.cost,
                        tokens = tokens + excluded.tokens,
                        requests = requests + 1,
                        updated_at = excluded.updated_at
                    """,
                    (provider, period, cost, tokens, stamp),
                )
            conn.execute(
                """
                INSERT INTO usage_event (timestamp, provider, method, tokens, cost, period)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (stamp, provider, method, tokens, cost, periods[0] if periods else ""),
            )

    def get_recent_events(
        self,
        provider: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[UsageEvent]:
        """Get recent usage events with optional filtering.

        Args:
            provider: Optional filter for a specific provider
            since: Optional lower bound on event timestamps
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by timestamp (newest first)
        """
        query = "SELECT timestamp, provider, method, tokens, cost FROM usage_event"
        params: List[Any] = []
        conditions = []

        if provider:
            conditions.append("provider = ?")
            params.append(provider)
        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(to_iso(since))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            UsageEvent(
                timestamp=from_iso(row["timestamp"]),
                provider=row["provider"],
                method=row["method"],
                tokens=row["tokens"],
                cost=row["cost"],
            )
            for row in rows
        ]


class CacheRepository:
    """Persistence for cached provider responses.

    Each cache namespace lives in its own table so that clearing or evicting
    one cache never touches another.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, table: str = "response_cache"):
        if table not in CACHE_TABLES:
            raise ValueError(f"Unknown cache table: {table}")
        self.db_path = db_path
        self.table = table

    def get(self, key: str) -> Optional[CacheEntry]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT key, data, expires_at, provider, method FROM {self.table} WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(
            key=row["key"],
            data=json.loads(row["data"]),
            expires_at=from_iso(row["expires_at"]),
            provider=row["provider"],
            method=row["method"],
        )

    def put(self, entry: CacheEntry) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                f"""
                INSERT OR REPLACE INTO {self.table} (key, data, expires_at, provider, method)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.key,
                    json.dumps(entry.data),
                    to_iso(entry.expires_at),
                    entry.provider,
                    entry.method,
                ),
            )

    def delete(self, key: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))

    def clear(self, provider: Optional[str] = None) -> int:
        """Delete all entries, or only those produced by `provider`."""
        with connect(self.db_path) as conn:
            if provider is None:
                cursor = conn.execute(f"DELETE FROM {self.table}")
            else:
                cursor = conn.execute(f"DELETE FROM {self.table} WHERE provider = ?", (provider,))
            return cursor.rowcount

    def delete_expired(self, now: datetime) -> int:
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE expires_at <= ?", (to_iso(now),)
            )
            return cursor.rowcount

    def count(self, expired_before: Optional[datetime] = None) -> int:
        with connect(self.db_path) as conn:
            if expired_before is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {self.table} WHERE expires_at <= ?",
                    (to_iso(expired_before),),
                ).fetchone()
        return int(row[0])

    def delete_oldest(self, count: int) -> int:
        """Delete the `count` entries that expire soonest."""
        if count <= 0:
            return 0
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM {self.table} WHERE key IN (
                    SELECT key FROM {self.table} ORDER BY expires_at ASC LIMIT ?
                )
                """,
                (count,),
            )
            return cursor.rowcount


class DeferredRepository:
    """Persistence for requests waiting to be retried."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, request: DeferredRequest) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO deferred_request (id, kind, payload, created_at, retry_count, max_retries)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.kind.value,
                    json.dumps(request.payload),
                    to_iso(request.created_at),
                    request.retry_count,
                    request.max_retries,
                ),
            )

    def list_all(self) -> List[DeferredRequest]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, kind, payload, created_at, retry_count, max_retries
                FROM deferred_request
                ORDER BY created_at ASC
                """
            ).fetchall()
        return [
            DeferredRequest(
                id=row["id"],
                kind=RequestKind(row["kind"]),
                payload=json.loads(row["payload"]),
                created_at=from_iso(row["created_at"]),
                retry_count=row["retry_count"],
                max_retries=row["max_retries"],
            )
            for row in rows
        ]

    def delete(self, request_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM deferred_request WHERE id = ?", (request_id,))

    def set_retry_count(self, request_id: str, retry_count: int) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "UPDATE deferred_request SET retry_count = ? WHERE id = ?",
                (retry_count, request_id),
            )

    def delete_exhausted(self) -> int:
        with connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM deferred_request WHERE retry_count >= max_retries")
            return cursor.rowcount


def summarize_events(events: Iterable[UsageEvent]) -> Dict[str, Any]:
    """Aggregate usage events into totals by provider, method and day.

    Returns:
        Dictionary with total_cost, by_provider, by_method and a daily_trend
        list of (date, cost) pairs in ascending date order
    """
    total = 0.0
    by_provider: Dict[str, float] = {}
    by_method: Dict[str, float] = {}
    daily: Dict[str, float] = {}
    for event in events:
        total += event.cost
        by_provider[event.provider] = by_provider.get(event.provider, 0.0) + event.cost
        by_method[event.method] = by_method.get(event.method, 0.0) + event.cost
        day = event.timestamp.strftime("%Y-%m-%d")
        daily[day] = daily.get(day, 0.0) + event.cost
    return {
        "total_cost": total,
        "by_provider": by_provider,
        "by_method": by_method,
        "daily_trend": sorted(daily.items()),
    }


