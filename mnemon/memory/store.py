"""Memory repository backed by DuckDB."""

import logging
import uuid
from typing import Any, Dict, List, Optional

from mnemon.memory.db import Database, from_db, to_db
from mnemon.memory.embeddings import cosine_similarity, deserialize_embedding, serialize_embedding
from mnemon.memory.schema import MEMORY_KINDS, InferenceCall, Memory, RunMessage, SimilarMemory, UpdateResult

logger = logging.getLogger(__name__)

SECONDS_PER_WEEK = 7 * 24 * 60 * 60

# Decay below this is not worth a write
DECAY_EPSILON = 0.001

MEMORY_COLUMNS = (
    "id, agent_id, content, embedding, strength, access_count, permanent, version, kind, "
    "last_accessed_at, created_at, updated_at"
)

UPDATABLE_FIELDS = {"content", "embedding", "permanent", "strength", "kind"}


def _row_to_memory(row) -> Memory:
    return Memory(
        id=row[0],
        agent_id=row[1],
        content=row[2],
        embedding=deserialize_embedding(row[3]),
        strength=row[4],
        access_count=row[5],
        permanent=bool(row[6]),
        version=row[7],
        kind=row[8],
        last_accessed_at=from_db(row[9]),
        created_at=from_db(row[10]),
        updated_at=from_db(row[11]),
    )


def _validate_content(content: str) -> str:
    content = (content or "").strip()
    if not content:
        raise ValueError("Memory content cannot be empty")
    return content


class MemoryStore:
    """Agent-scoped memory rows plus the run bookkeeping the passive worker reads.

    Every method is a coroutine; the DuckDB work runs on a thread.
    """

    def __init__(self, db: Database):
        self.db = db

    # Memories

    async def get(self, memory_id: str) -> Optional[Memory]:
        def _get(conn):
            row = conn.execute(f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", [memory_id]).fetchone()
            return _row_to_memory(row) if row else None

        return await self.db.run(_get)

    async def list(self, agent_id: str, min_strength: float = 0) -> List[Memory]:
        """List an agent's memories at or above a strength threshold, strongest first."""

        def _list(conn):
            rows = conn.execute(
                f"""
                SELECT {MEMORY_COLUMNS} FROM memories
                WHERE agent_id = ? AND strength >= ?
                ORDER BY strength DESC, created_at ASC
                """,
                [agent_id, min_strength],
            ).fetchall()
            return [_row_to_memory(row) for row in rows]

        return await self.db.run(_list)

    async def count(self, agent_id: str) -> int:
        def _count(conn):
            row = conn.execute("SELECT COUNT(*) FROM memories WHERE agent_id = ?", [agent_id]).fetchone()
            return row[0] if row else 0

        return await self.db.run(_count)

    async def create(
        self,
        agent_id: str,
        content: str,
        embedding: Optional[List[float]] = None,
        permanent: bool = False,
        strength: float = 1.0,
        access_count: int = 0,
        kind: str = "fact",
    ) -> Memory:
        """Insert a memory.

        Raises:
            ValueError: If content is empty or kind is unknown
        """
        content = _validate_content(content)
        if kind not in MEMORY_KINDS:
            raise ValueError(f"Unknown memory kind '{kind}'")

        memory_id = str(uuid.uuid4())
        now = to_db(self.db.now())
        blob = serialize_embedding(embedding) if embedding else None

        def _create(conn):
            conn.execute(
                """
                INSERT INTO memories (id, agent_id, content, embedding, strength, access_count, permanent,
                                      version, kind, last_accessed_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, NULL, ?, ?)
                """,
                [memory_id, agent_id, content, blob, strength, access_count, permanent, kind, now, now],
            )
            row = conn.execute(f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", [memory_id]).fetchone()
            return _row_to_memory(row)

        memory = await self.db.run(_create)
        logger.debug("Stored memory %s: %s...", memory.id, memory.content[:50])
        return memory

    async def update(self, memory_id: str, expected_version: Optional[int] = None, **fields: Any) -> UpdateResult:
        """Update a memory, bumping its version.

        Args:
            memory_id: ID of memory to update
            expected_version: If given, the write only applies when the stored version matches
            **fields: Any of content, embedding, permanent, strength, kind

        Returns:
            UpdateResult with status updated, not_found or version_conflict
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown memory fields: {sorted(unknown)}")

        values: Dict[str, Any] = dict(fields)
        if "content" in values:
            values["content"] = _validate_content(values["content"])
        if "kind" in values and values["kind"] not in MEMORY_KINDS:
            raise ValueError(f"Unknown memory kind '{values['kind']}'")
        if "embedding" in values:
            values["embedding"] = serialize_embedding(values["embedding"]) if values["embedding"] else None

        now = to_db(self.db.now())

        def _update(conn):
            row = conn.execute("SELECT version FROM memories WHERE id = ?", [memory_id]).fetchone()
            if row is None:
                return UpdateResult(status="not_found")
            current_version = row[0]
            if expected_version is not None and current_version != expected_version:
                return UpdateResult(status="version_conflict")

            assignments = [f"{name} = ?" for name in values]
            params = list(values.values())
            assignments += ["version = ?", "updated_at = ?"]
            params += [current_version + 1, now]

            updated = conn.execute(
                f"""
                UPDATE memories SET {", ".join(assignments)}
                WHERE id = ? AND version = ?
                RETURNING {MEMORY_COLUMNS}
                """,
                params + [memory_id, current_version],
            ).fetchone()
            if updated is None:
                return UpdateResult(status="version_conflict")
            return UpdateResult(status="updated", memory=_row_to_memory(updated))

        result = await self.db.run_transaction(_update)
        logger.debug("Update of memory %s: %s", memory_id, result.status)
        return result

    async def delete(self, memory_id: str) -> bool:
        """Delete a memory by ID. Returns False if it didn't exist."""

        def _delete(conn):
            return conn.execute("DELETE FROM memories WHERE id = ? RETURNING id", [memory_id]).fetchone()

        deleted = await self.db.run(_delete)
        if deleted:
            logger.debug("Deleted memory %s", memory_id)
            return True
        return False

    async def delete_non_permanent(self, agent_id: str) -> int:
        """Delete every non-permanent memory of an agent."""

        def _delete(conn):
            rows = conn.execute(
                "DELETE FROM memories WHERE agent_id = ? AND permanent = FALSE RETURNING id", [agent_id]
            ).fetchall()
            return len(rows)

        return await self.db.run(_delete)

    async def reinforce(self, memory_id: str, amount: float = 0.2) -> Optional[Memory]:
        """Boost strength (capped at 1.0) and record an access.

        Access bookkeeping does not bump the version.
        """
        now = to_db(self.db.now())

        def _reinforce(conn):
            row = conn.execute(
                f"""
                UPDATE memories
                SET strength = LEAST(1.0, strength + ?),
                    access_count = access_count + 1,
                    last_accessed_at = ?,
                    updated_at = ?
                WHERE id = ?
                RETURNING {MEMORY_COLUMNS}
                """,
                [amount, now, now, memory_id],
            ).fetchone()
            return _row_to_memory(row) if row else None

        return await self.db.run(_reinforce)

    async def decay(self, agent_id: str, rate_per_week: float = 0.1) -> int:
        """Decay all non-permanent memories of an agent by time since last access.

        Elapsed time is measured from the later of the last access (or creation)
        and the previous decay, so repeated calls don't compound.

        Returns:
            Number of memories whose strength changed
        """
        now = self.db.now()

        def _decay(conn):
            rows = conn.execute(
                """
                SELECT id, strength, COALESCE(last_accessed_at, created_at), decayed_at
                FROM memories
                WHERE agent_id = ? AND permanent = FALSE
                """,
                [agent_id],
            ).fetchall()

            decayed = 0
            for memory_id, strength, last_access, decayed_at in rows:
                reference = from_db(last_access)
                if decayed_at is not None and from_db(decayed_at) > reference:
                    reference = from_db(decayed_at)
                weeks = max(0.0, (now - reference).total_seconds()) / SECONDS_PER_WEEK
                new_strength = max(0.0, strength - weeks * rate_per_week)
                if abs(new_strength - strength) > DECAY_EPSILON:
                    conn.execute(
                        "UPDATE memories SET strength = ?, decayed_at = ? WHERE id = ? AND permanent = FALSE",
                        [new_strength, to_db(now), memory_id],
                    )
                    decayed += 1
            return decayed

        count = await self.db.run_transaction(_decay)
        if count:
            logger.debug("Decayed %d memories for agent %s", count, agent_id)
        return count

    async def find_similar(
        self,
        agent_id: str,
        vector: List[float],
        limit: int = 15,
        min_strength: float = 0.1,
    ) -> List[SimilarMemory]:
        """Rank an agent's embedded memories by cosine similarity to a vector."""
        memories = [m for m in await self.list(agent_id, min_strength) if m.embedding]
        scored = [SimilarMemory(memory=m, similarity=cosine_similarity(vector, m.embedding)) for m in memories]
        scored.sort(key=lambda s: s.similarity, reverse=True)
        return scored[:limit]

    # Run messages

    async def add_message(self, job_id: str, role: str, content: Optional[str]) -> RunMessage:
        """Record one message of a run so the passive worker can build a transcript."""
        now = to_db(self.db.now())

        def _add(conn):
            row = conn.execute("SELECT COALESCE(MAX(seq), -1) + 1 FROM run_messages WHERE job_id = ?", [job_id]).fetchone()
            seq = row[0]
            conn.execute(
                "INSERT INTO run_messages (job_id, seq, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                [job_id, seq, role, content, now],
            )
            return RunMessage(job_id=job_id, role=role, content=content, seq=seq, created_at=from_db(now))

        return await self.db.run_transaction(_add)

    async def list_messages(self, job_id: str) -> List[RunMessage]:
        def _list(conn):
            rows = conn.execute(
                "SELECT job_id, seq, role, content, created_at FROM run_messages WHERE job_id = ? ORDER BY seq",
                [job_id],
            ).fetchall()
            return [
                RunMessage(job_id=r[0], seq=r[1], role=r[2], content=r[3], created_at=from_db(r[4])) for r in rows
            ]

        return await self.db.run(_list)

    # Inference audit

    async def insert_inference_call(self, call: InferenceCall) -> None:
        now = to_db(call.created_at or self.db.now())

        def _insert(conn):
            conn.execute(
                """
                INSERT INTO inference_calls (job_id, agent_id, turn, model, prompt_tokens, completion_tokens,
                                             total_tokens, cost_usd, duration_ms, attempt_kind, attempt_index,
                                             created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    call.job_id,
                    call.agent_id,
                    call.turn,
                    call.model,
                    call.prompt_tokens,
                    call.completion_tokens,
                    call.total_tokens,
                    call.cost_usd,
                    call.duration_ms,
                    call.attempt_kind,
                    call.attempt_index,
                    now,
                ],
            )

        await self.db.run(_insert)

    async def list_inference_calls(self, job_id: str) -> List[InferenceCall]:
        def _list(conn):
            rows = conn.execute(
                """
                SELECT job_id, agent_id, turn, model, prompt_tokens, completion_tokens, total_tokens, cost_usd,
                       duration_ms, attempt_kind, attempt_index, created_at
                FROM inference_calls WHERE job_id = ? ORDER BY turn
                """,
                [job_id],
            ).fetchall()
            return [
                InferenceCall(
                    job_id=r[0],
                    agent_id=r[1],
                    turn=r[2],
                    model=r[3],
                    prompt_tokens=r[4],
                    completion_tokens=r[5],
                    total_tokens=r[6],
                    cost_usd=r[7],
                    duration_ms=r[8],
                    attempt_kind=r[9],
                    attempt_index=r[10],
                    created_at=from_db(r[11]),
                )
                for r in rows
            ]

        return await self.db.run(_list)

    # Runtime control

    async def get_processing_enabled(self) -> bool:
        def _get(conn):
            row = conn.execute("SELECT processing_enabled FROM runtime_control WHERE id = 'default'").fetchone()
            return bool(row[0]) if row else True

        return await self.db.run(_get)

    async def set_processing_enabled(self, enabled: bool) -> None:
        now = to_db(self.db.now())

        def _set(conn):
            conn.execute(
                "UPDATE runtime_control SET processing_enabled = ?, updated_at = ? WHERE id = 'default'",
                [enabled, now],
            )

        await self.db.run(_set)
        logger.info("Passive memory processing %s", "enabled" if enabled else "disabled")
