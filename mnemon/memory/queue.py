"""Passive memory extraction queue backed by DuckDB."""

import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from mnemon.memory.db import Database, from_db, to_db
from mnemon.memory.schema import ActorIdentity, QueueEntry

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 180
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 30

QUEUE_COLUMNS = (
    "id, job_id, agent_id, work_item_id, dispatch_id, status, attempt_count, max_attempts, next_attempt_at, "
    "claimed_by, lease_expires_at, last_error, summary_json, started_at, completed_at, created_at, updated_at, "
    "actor_json"
)


def _row_to_entry(row) -> QueueEntry:
    return QueueEntry(
        id=row[0],
        job_id=row[1],
        agent_id=row[2],
        work_item_id=row[3],
        dispatch_id=row[4],
        status=row[5],
        attempt_count=row[6],
        max_attempts=row[7],
        next_attempt_at=from_db(row[8]),
        claimed_by=row[9],
        lease_expires_at=from_db(row[10]),
        last_error=row[11],
        summary_json=row[12],
        started_at=from_db(row[13]),
        completed_at=from_db(row[14]),
        created_at=from_db(row[15]),
        updated_at=from_db(row[16]),
        actor_json=row[17],
    )


def _dump_summary(summary: Optional[Dict[str, Any]]) -> Optional[str]:
    if summary is None:
        return None
    return json.dumps(summary, default=str)


class PassiveMemoryQueue:
    """At-most-once leased queue of completed runs awaiting memory extraction."""

    def __init__(self, db: Database):
        self.db = db

    async def enqueue(
        self,
        job_id: str,
        agent_id: str,
        work_item_id: Optional[str] = None,
        dispatch_id: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        actor: Optional[ActorIdentity] = None,
    ) -> Tuple[QueueEntry, bool]:
        """Enqueue a run for extraction. A second enqueue of the same job_id is a no-op.

        ``actor`` is stored with the row so extraction can name the user.

        Returns:
            Tuple of (the row for job_id, whether this call created it)
        """
        now = to_db(self.db.now())
        actor_json = json.dumps(actor.to_dict()) if actor and actor.name else None

        def _enqueue(conn):
            inserted = conn.execute(
                """
                INSERT INTO passive_memory_queue (id, job_id, agent_id, work_item_id, dispatch_id, status,
                                                  attempt_count, max_attempts, created_at, updated_at, actor_json)
                VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                ON CONFLICT (job_id) DO NOTHING
                RETURNING id
                """,
                [str(uuid.uuid4()), job_id, agent_id, work_item_id, dispatch_id, max_attempts, now, now, actor_json],
            ).fetchall()
            row = conn.execute(f"SELECT {QUEUE_COLUMNS} FROM passive_memory_queue WHERE job_id = ?", [job_id]).fetchone()
            return _row_to_entry(row), len(inserted) > 0

        entry, created = await self.db.run_transaction(_enqueue)
        if created:
            logger.debug("Enqueued passive memory job %s for agent %s", job_id, agent_id)
        return entry, created

    async def get_by_job(self, job_id: str) -> Optional[QueueEntry]:
        def _get(conn):
            row = conn.execute(f"SELECT {QUEUE_COLUMNS} FROM passive_memory_queue WHERE job_id = ?", [job_id]).fetchone()
            return _row_to_entry(row) if row else None

        return await self.db.run(_get)

    async def claim_next(self, worker_id: str, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> Optional[QueueEntry]:
        """Atomically claim the oldest eligible row with a lease.

        Eligible rows are pending rows that are due, failed rows with attempts left
        whose retry time has come, and processing rows whose lease has expired.
        The compare-and-set update guarantees that of two concurrent claims on the
        same row only one wins.
        """
        now = self.db.now()
        ts = to_db(now)
        lease_expires = to_db(now + timedelta(seconds=lease_seconds))

        def _claim(conn):
            candidate = conn.execute(
                """
                SELECT id, status, attempt_count FROM passive_memory_queue
                WHERE (status = 'pending' AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
                   OR (status = 'failed' AND attempt_count < max_attempts
                       AND next_attempt_at IS NOT NULL AND next_attempt_at <= ?)
                   OR (status = 'processing' AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?)
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """,
                [ts, ts, ts],
            ).fetchone()
            if candidate is None:
                return None

            entry_id, status, attempt_count = candidate
            row = conn.execute(
                f"""
                UPDATE passive_memory_queue
                SET status = 'processing',
                    claimed_by = ?,
                    lease_expires_at = ?,
                    attempt_count = attempt_count + 1,
                    started_at = COALESCE(started_at, ?),
                    updated_at = ?
                WHERE id = ? AND status = ? AND attempt_count = ?
                RETURNING {QUEUE_COLUMNS}
                """,
                [worker_id, lease_expires, ts, ts, entry_id, status, attempt_count],
            ).fetchone()
            return _row_to_entry(row) if row else None

        entry = await self.db.run_transaction(_claim)
        if entry is not None:
            logger.debug("Worker %s claimed job %s (attempt %d)", worker_id, entry.job_id, entry.attempt_count)
        return entry

    async def _finish(self, entry_id: str, assignments: Dict[str, Any]) -> Optional[QueueEntry]:
        """Apply a terminal/failed transition to a row that is still processing."""
        ts = to_db(self.db.now())
        values = dict(assignments)
        values["lease_expires_at"] = None
        values["updated_at"] = ts

        def _update(conn):
            row = conn.execute(
                f"""
                UPDATE passive_memory_queue SET {", ".join(f"{name} = ?" for name in values)}
                WHERE id = ? AND status = 'processing'
                RETURNING {QUEUE_COLUMNS}
                """,
                list(values.values()) + [entry_id],
            ).fetchone()
            return _row_to_entry(row) if row else None

        entry = await self.db.run(_update)
        if entry is None:
            logger.warning("Queue row %s was not processing; transition dropped", entry_id)
        return entry

    async def mark_completed(self, entry_id: str, summary: Optional[Dict[str, Any]] = None) -> Optional[QueueEntry]:
        return await self._finish(
            entry_id,
            {"status": "completed", "summary_json": _dump_summary(summary), "completed_at": to_db(self.db.now())},
        )

    async def mark_skipped(self, entry_id: str, summary: Optional[Dict[str, Any]] = None) -> Optional[QueueEntry]:
        return await self._finish(
            entry_id,
            {"status": "skipped", "summary_json": _dump_summary(summary), "completed_at": to_db(self.db.now())},
        )

    async def mark_failed(
        self,
        entry_id: str,
        error: str,
        retryable: bool = False,
        retry_delay_seconds: Optional[float] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> Optional[QueueEntry]:
        """Mark a row failed.

        Retryable failures get a ``next_attempt_at``; terminal failures get none
        and are never claimed again.
        """
        next_attempt_at = None
        completed_at = None
        if retryable:
            delay = max(1, int(retry_delay_seconds if retry_delay_seconds is not None else DEFAULT_RETRY_DELAY_SECONDS))
            next_attempt_at = to_db(self.db.now() + timedelta(seconds=delay))
        else:
            completed_at = to_db(self.db.now())

        return await self._finish(
            entry_id,
            {
                "status": "failed",
                "last_error": error,
                "next_attempt_at": next_attempt_at,
                "summary_json": _dump_summary(summary),
                "completed_at": completed_at,
            },
        )

    async def list_by_agent(self, agent_id: str, status: Optional[str] = None, limit: int = 50) -> List[QueueEntry]:
        limit = min(max(limit, 1), 500)

        def _list(conn):
            sql = f"SELECT {QUEUE_COLUMNS} FROM passive_memory_queue WHERE agent_id = ?"
            params: List[Any] = [agent_id]
            if status:
                sql += " AND status = ?"
                params.append(status)
            sql += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)
            return [_row_to_entry(row) for row in conn.execute(sql, params).fetchall()]

        return await self.db.run(_list)

    async def count_by_status(self, agent_id: Optional[str] = None) -> Dict[str, int]:
        def _count(conn):
            sql = "SELECT status, COUNT(*) FROM passive_memory_queue"
            params: List[Any] = []
            if agent_id is not None:
                sql += " WHERE agent_id = ?"
                params.append(agent_id)
            sql += " GROUP BY status"
            return {status: count for status, count in conn.execute(sql, params).fetchall()}

        return await self.db.run(_count)
