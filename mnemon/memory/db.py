"""DuckDB connection and schema shared by the memory and queue repositories."""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

from mnemon.exceptions import DatabaseLockedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to the naive UTC form stored in TIMESTAMP columns."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a naive UTC TIMESTAMP value back to an aware datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS memories (
        id VARCHAR PRIMARY KEY,
        agent_id VARCHAR NOT NULL,
        content VARCHAR NOT NULL,
        embedding BLOB,
        strength DOUBLE NOT NULL DEFAULT 1.0,
        access_count INTEGER NOT NULL DEFAULT 0,
        permanent BOOLEAN NOT NULL DEFAULT FALSE,
        version INTEGER NOT NULL DEFAULT 1,
        kind VARCHAR NOT NULL DEFAULT 'fact',
        last_accessed_at TIMESTAMP,
        decayed_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS passive_memory_queue (
        id VARCHAR PRIMARY KEY,
        job_id VARCHAR NOT NULL UNIQUE,
        agent_id VARCHAR NOT NULL,
        work_item_id VARCHAR,
        dispatch_id VARCHAR,
        status VARCHAR NOT NULL DEFAULT 'pending',
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        next_attempt_at TIMESTAMP,
        claimed_by VARCHAR,
        lease_expires_at TIMESTAMP,
        last_error VARCHAR,
        summary_json VARCHAR,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        actor_json VARCHAR
    )
    """,
    "ALTER TABLE passive_memory_queue ADD COLUMN IF NOT EXISTS actor_json VARCHAR",
    """
    CREATE TABLE IF NOT EXISTS run_messages (
        job_id VARCHAR NOT NULL,
        seq INTEGER NOT NULL,
        role VARCHAR NOT NULL,
        content VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inference_calls (
        job_id VARCHAR NOT NULL,
        agent_id VARCHAR NOT NULL,
        turn INTEGER NOT NULL,
        model VARCHAR NOT NULL,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        cost_usd DOUBLE NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        attempt_kind VARCHAR,
        attempt_index INTEGER,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runtime_control (
        id VARCHAR PRIMARY KEY,
        processing_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_agent ON memories (agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_run_messages_job ON run_messages (job_id)",
]


class Database:
    """A DuckDB connection shared by the repositories.

    DuckDB connections are not safe for concurrent use, so every statement runs
    under one lock. Async callers go through :meth:`run`, which executes the
    blocking work on a thread.
    """

    def __init__(self, db_path: Union[Path, str], clock: Clock = utcnow):
        """Open (or create) the database.

        Args:
            db_path: Path to the DuckDB file, or ":memory:"
            clock: Source of the current time, injectable for tests
        """
        try:
            import duckdb
        except ImportError as e:
            raise ImportError("duckdb is required for memory storage. Install with: pip install duckdb") from e

        self.db_path = db_path
        self.clock = clock
        self._lock = threading.Lock()

        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = duckdb.connect(str(db_path))
        except duckdb.IOException as e:
            raise DatabaseLockedError(
                f"Could not open {db_path}: the database is held by another process, "
                f"usually a running 'mnemon worker' ({e})",
                db_path=str(db_path),
            ) from e
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._lock:
            for statement in SCHEMA:
                self.conn.execute(statement)
            self.conn.execute(
                "INSERT INTO runtime_control (id, processing_enabled, updated_at) "
                "VALUES ('default', TRUE, ?) ON CONFLICT DO NOTHING",
                [to_db(self.clock())],
            )

    def now(self) -> datetime:
        return self.clock()

    def execute(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(conn, *args)`` while holding the connection lock."""
        with self._lock:
            if self.conn is None:
                raise RuntimeError("Database is closed")
            return fn(self.conn, *args)

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(conn, *args)`` on a worker thread while holding the connection lock."""
        return await asyncio.to_thread(self.execute, fn, *args)

    def transaction(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(conn, *args)`` inside BEGIN/COMMIT, rolling back on error."""

        def _in_transaction(conn, *inner_args):
            conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(conn, *inner_args)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result

        return self.execute(_in_transaction, *args)

    async def run_transaction(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self.transaction, fn, *args)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
