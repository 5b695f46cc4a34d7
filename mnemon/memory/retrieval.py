"""Multi-factor memory retrieval with decay and reinforcement."""

import logging
import re
from datetime import datetime
from typing import List, Optional

from mnemon.config import MemorySettings
from mnemon.memory.db import utcnow
from mnemon.memory.embeddings import EmbeddingProvider, cosine_similarity, try_embed
from mnemon.memory.schema import Memory, ScoredMemory
from mnemon.memory.store import MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

SIMILARITY_POINTS = 50
STRENGTH_POINTS = 30
ACCESS_POINTS_PER_HIT = 2
ACCESS_POINTS_CAP = 20
RECENT_DAY_BONUS = 10
RECENT_WEEK_BONUS = 5

_BOUNDARY_TAG = re.compile(r"</?\s*memory\b[^>]*>", re.IGNORECASE)


def score_memory(
    memory: Memory,
    query_embedding: Optional[List[float]],
    settings: MemorySettings,
    now: Optional[datetime] = None,
) -> ScoredMemory:
    """Score a memory from similarity, strength, access frequency and recency.

    score = similarity*50*similarity_weight (when both vectors exist)
            + strength*30
            + min(access_count*2, 20)
            + 10 if accessed within a day, 5 if within a week
    """
    now = now or utcnow()
    score = 0.0
    similarity = None

    if query_embedding and memory.embedding:
        similarity = cosine_similarity(query_embedding, memory.embedding)
        score += similarity * SIMILARITY_POINTS * settings.similarity_weight

    score += memory.strength * STRENGTH_POINTS
    score += min(memory.access_count * ACCESS_POINTS_PER_HIT, ACCESS_POINTS_CAP)

    last_access = memory.last_accessed_at or memory.created_at
    if last_access is not None:
        days_since_access = (now - last_access).total_seconds() / SECONDS_PER_DAY
        if days_since_access < 1:
            score += RECENT_DAY_BONUS
        elif days_since_access < 7:
            score += RECENT_WEEK_BONUS

    return ScoredMemory(memory=memory, score=score, similarity=similarity)


async def retrieve_memories(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    context_text: str,
    settings: MemorySettings,
) -> List[ScoredMemory]:
    """Retrieve the most relevant memories for an agent's current context.

    Decays the agent's memories, scores what is left above ``min_strength``,
    and reinforces every memory it returns. Embedding failures only drop the
    similarity term.

    Args:
        store: Memory repository
        embeddings: Embedding provider, or None to score without similarity
        agent_id: Agent whose memories to search
        context_text: Current conversation context
        settings: The agent's memory settings

    Returns:
        Top ``max_memories`` memories, highest score first
    """
    if not settings.enabled:
        return []

    await store.decay(agent_id, settings.decay_rate)

    memories = await store.list(agent_id, settings.min_strength)
    if not memories:
        return []

    query_embedding = await try_embed(embeddings, context_text)

    now = store.db.now()
    scored = [score_memory(memory, query_embedding, settings, now) for memory in memories]
    scored.sort(key=lambda s: s.score, reverse=True)
    top = scored[: settings.max_memories]

    for item in top:
        await store.reinforce(item.id, settings.reinforce_amount)

    logger.debug("Retrieved %d of %d memories for agent %s", len(top), len(memories), agent_id)
    return top


def sanitize(text: str) -> str:
    """Neutralize memory boundary tags inside untrusted text."""
    return _BOUNDARY_TAG.sub(lambda m: m.group(0).replace("<", "&lt;").replace(">", "&gt;"), text)


def wrap_boundary(tag: str, body: str) -> str:
    return f"<{tag}>\n{body}\n</{tag}>"


def format_memories_for_prompt(memories: List[ScoredMemory]) -> str:
    """Format memories for inclusion in a system prompt.

    Includes version and id so agents can reference them when updating.
    """
    if not memories:
        return ""

    lines = []
    for item in memories:
        memory = item.memory
        marker = "📌 " if memory.permanent else ""
        lines.append(f"- {marker}[v{memory.version}] {sanitize(memory.content)} (id: {memory.id})")

    return wrap_boundary("memory", "## Things You Remember\n" + "\n".join(lines))
