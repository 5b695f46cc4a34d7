"""Apply reconciled candidates to the memory store."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from mnemon.config import MemorySettings
from mnemon.memory.embeddings import EmbeddingProvider
from mnemon.memory.mutations import create_memory_with_embedding, find_related_memories, update_memory_with_embedding
from mnemon.memory.schema import Memory, UpdateResult
from mnemon.memory.store import MemoryStore
from mnemon.passive.extraction import Candidate

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.7
DEDUPE_THRESHOLD = 0.85
DEDUPE_SEARCH_LIMIT = 5

# Digests are weaker and evicted before discrete facts
KIND_STRENGTH = {"fact": 1.0, "task": 1.0, "digest": 0.5}

FallbackPolicy = Callable[[UpdateResult], bool]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class ApplyResult:
    created_ids: List[str] = field(default_factory=list)
    updated_ids: List[str] = field(default_factory=list)
    evicted_ids: List[str] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    def skip(self, reason: str, content: str) -> None:
        self.skipped.append({"reason": reason, "content": content})

    def to_dict(self) -> dict:
        return asdict(self)


def overwrite_on_conflict(result: UpdateResult) -> bool:
    """Fallback policy: retry a version conflict without the version check.

    The snapshot is at most one job old, so the candidate is treated as the
    newer truth. A target that no longer exists is never recreated.
    """
    return result.status == "version_conflict"


def never_overwrite(result: UpdateResult) -> bool:
    return False


async def versioned_update(
    store: MemoryStore, embeddings: Optional[EmbeddingProvider], memory: Memory, content: str
) -> UpdateResult:
    return await update_memory_with_embedding(store, embeddings, memory.id, content, expected_version=memory.version)


async def unconditioned_update(
    store: MemoryStore, embeddings: Optional[EmbeddingProvider], memory_id: str, content: str
) -> UpdateResult:
    return await update_memory_with_embedding(store, embeddings, memory_id, content)


async def update_with_fallback(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    memory: Memory,
    content: str,
    fallback: FallbackPolicy = overwrite_on_conflict,
) -> UpdateResult:
    """Version-checked update, then an unconditioned one if ``fallback`` allows it."""
    result = await versioned_update(store, embeddings, memory, content)
    if result.ok or not fallback(result):
        return result

    logger.info("Memory %s changed since v%d; overwriting without version check", memory.id, memory.version)
    return await unconditioned_update(store, embeddings, memory.id, content)


def select_eviction(memories: List[Memory]) -> Optional[Memory]:
    """Weakest non-permanent memory, oldest update first on ties."""
    eligible = [m for m in memories if not m.permanent]
    if not eligible:
        return None
    return min(eligible, key=lambda m: (m.strength, m.updated_at or m.created_at or _EPOCH))


def _replace_in_snapshot(memories: List[Memory], updated: Memory) -> None:
    for index, memory in enumerate(memories):
        if memory.id == updated.id:
            memories[index] = updated
            return


async def apply_candidates(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    candidates: List[Candidate],
    settings: MemorySettings,
    fallback: FallbackPolicy = overwrite_on_conflict,
) -> ApplyResult:
    """Create, update or skip each candidate against a snapshot of the agent's memories.

    Args:
        store: Memory repository
        embeddings: Embedding provider (best-effort)
        agent_id: Agent owning the memories
        candidates: Reconciled candidates, in order
        settings: Agent memory settings (capacity and reinforcement)
        fallback: Policy deciding whether a failed versioned update is retried unconditioned

    Returns:
        ApplyResult with every created, updated and evicted id and each skip reason
    """
    result = ApplyResult()
    memories = await store.list(agent_id, 0)
    seen_contents = set()

    for candidate in candidates:
        content = candidate.content

        if candidate.confidence < MIN_CONFIDENCE:
            result.skip("low_confidence", content)
            continue

        if content in seen_contents:
            result.skip("duplicate_candidate", content)
            continue
        seen_contents.add(content)

        if candidate.target_memory_id:
            target = next((m for m in memories if m.id == candidate.target_memory_id), None)
            if target is None:
                result.skip("target_memory_not_found_fallback", content)
                continue

            update = await update_with_fallback(store, embeddings, target, content, fallback)
            if not update.ok:
                reason = "target_memory_not_found_fallback" if update.status == "not_found" else "update_failed"
                result.skip(reason, content)
                continue

            _replace_in_snapshot(memories, update.memory)
            result.updated_ids.append(update.memory.id)
            await store.reinforce(update.memory.id, settings.reinforce_amount)
            continue

        related = await find_related_memories(store, embeddings, agent_id, content, DEDUPE_SEARCH_LIMIT)
        best = next((r for r in related if r.similarity >= DEDUPE_THRESHOLD), None)
        if best is not None:
            update = await update_with_fallback(store, embeddings, best.memory, content, fallback)
            if update.ok:
                _replace_in_snapshot(memories, update.memory)
                result.updated_ids.append(update.memory.id)
                await store.reinforce(update.memory.id, settings.reinforce_amount)
            else:
                result.skip("update_failed", content)
            continue

        if len(memories) >= settings.max_stored_memories:
            victim = select_eviction(memories)
            if victim is None:
                result.skip("memory_full_all_permanent", content)
                continue
            await store.delete(victim.id)
            memories = [m for m in memories if m.id != victim.id]
            result.evicted_ids.append(victim.id)
            logger.debug("Evicted memory %s (strength %.2f) for agent %s", victim.id, victim.strength, agent_id)

        created = await create_memory_with_embedding(
            store,
            embeddings,
            agent_id,
            content,
            permanent=False,
            kind=candidate.kind,
            strength=KIND_STRENGTH.get(candidate.kind, 1.0),
        )
        memories.append(created)
        result.created_ids.append(created.id)

    return result
