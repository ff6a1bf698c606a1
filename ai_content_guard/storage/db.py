"""
Database connection management.

Provides SQLite connections and the schema for every persisted record:
generation jobs and results, the response cache, the usage ledger,
deferred requests and content items.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ai_content_guard.core.errors import StorageUnavailable

DEFAULT_DB_PATH = "ai_content_guard.db"
CACHE_TABLES = ("response_cache", "quick_translation_cache")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS generation_job (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        content_fingerprint TEXT NOT NULL,
        item_ids TEXT NOT NULL,
        l1 TEXT NOT NULL,
        l2 TEXT NOT NULL,
        level TEXT NOT NULL,
        difficulties TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        not_before TEXT
    )
    """,
    # At most one live job per content fingerprint
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_generation_job_active
    ON generation_job (user_id, content_fingerprint)
    WHERE status IN ('pending', 'processing')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generation_job_status
    ON generation_job (status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS generation_result (
        user_id TEXT NOT NULL,
        content_fingerprint TEXT NOT NULL,
        item_id TEXT NOT NULL,
        content TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ready',
        is_placeholder INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, content_fingerprint, item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_item (
        user_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        text TEXT NOT NULL,
        translation TEXT NOT NULL DEFAULT '',
        context TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (user_id, item_id)
    )
    """,
    *(
        statement
        for table in CACHE_TABLES
        for statement in (
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                provider TEXT NOT NULL,
                method TEXT NOT NULL
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{table}_expires ON {table} (expires_at)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_provider ON {table} (provider)",
        )
    ),
    """
    CREATE TABLE IF NOT EXISTS usage_ledger (
        provider TEXT NOT NULL,
        period TEXT NOT NULL,
        cost REAL NOT NULL DEFAULT 0,
        tokens INTEGER NOT NULL DEFAULT 0,
        requests INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (provider, period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        provider TEXT NOT NULL,
        method TEXT NOT NULL,
        tokens INTEGER NOT NULL,
        cost REAL NOT NULL,
        period TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deferred_request (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3
    )
    """,
)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and
        name-addressable rows
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection for one unit of work.

    Commits on success and rolls back on error. Operational errors (missing
    tables, unreachable file, lock timeouts) surface as StorageUnavailable so
    callers can degrade instead of crashing.
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.OperationalError as e:
        raise StorageUnavailable(f"Cannot open database {db_path}: {e}") from e
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as e:
        conn.rollback()
        raise StorageUnavailable(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables and indexes if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
