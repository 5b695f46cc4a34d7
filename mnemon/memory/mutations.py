"""Embedding-aware memory mutations and the agent-facing memory tools."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mnemon.memory.embeddings import EmbeddingProvider, try_embed
from mnemon.memory.schema import Memory, SimilarMemory, UpdateResult
from mnemon.memory.store import MemoryStore

logger = logging.getLogger(__name__)

MAX_DISAMBIGUATION_OPTIONS = 5
MATCH_MODES = ("exact", "contains")


async def create_memory_with_embedding(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    content: str,
    permanent: bool = False,
    kind: str = "fact",
    strength: float = 1.0,
) -> Memory:
    """Create a new memory, embedding its content when a provider is available."""
    embedding = await try_embed(embeddings, content)
    return await store.create(
        agent_id,
        content,
        embedding=embedding,
        permanent=permanent,
        strength=strength,
        access_count=0,
        kind=kind,
    )


async def update_memory_with_embedding(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    memory_id: str,
    content: str,
    expected_version: Optional[int] = None,
    **fields: Any,
) -> UpdateResult:
    """Replace a memory's content and regenerate its embedding.

    Args:
        store: Memory repository
        embeddings: Embedding provider (best-effort)
        memory_id: Memory to update
        content: New content
        expected_version: Optimistic concurrency token; stale values yield version_conflict
        **fields: Extra fields written in the same update (permanent, strength)
    """
    embedding = await try_embed(embeddings, content)
    return await store.update(memory_id, expected_version=expected_version, content=content, embedding=embedding, **fields)


async def find_related_memories(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    text: str,
    limit: int = 5,
) -> List[SimilarMemory]:
    """Nearest stored memories to a piece of text. Empty when embeddings are unavailable."""
    vector = await try_embed(embeddings, text)
    if not vector:
        return []
    return await store.find_similar(agent_id, vector, limit=limit)


# Tool-facing API


@dataclass
class MemoryToolContext:
    agent_id: Optional[str]
    store: MemoryStore
    embeddings: Optional[EmbeddingProvider] = None


@dataclass
class ToolResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


MEMORY_TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "add_memory",
        "description": "Store a long-term memory for this agent so it can be recalled in future conversations.",
        "input_schema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The memory content to store."},
                "permanent": {
                    "type": "boolean",
                    "description": "Whether this memory should be pinned and never decay (default: false).",
                },
            },
            "required": ["content"],
        },
    },
    {
        "name": "remove_memory",
        "description": "Delete one stored memory for this agent, by memory ID or by matching memory text.",
        "input_schema": {
            "type": "object",
            "properties": {
                "memory_id": {"type": "string", "description": "Exact memory ID to delete (preferred when known)."},
                "content": {"type": "string", "description": "Memory text to match when memory_id is not provided."},
                "match_mode": {
                    "type": "string",
                    "enum": list(MATCH_MODES),
                    "description": "How to match content: exact or contains (default: exact).",
                },
            },
        },
    },
    {
        "name": "update_memory",
        "description": (
            "Update or delete one stored memory for this agent by ID or matching existing memory text. "
            "Supports content edits and pin/unpin. Provide version for safe concurrent updates."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "memory_id": {"type": "string", "description": "Exact memory ID to update/delete."},
                "content": {
                    "type": "string",
                    "description": "Existing memory text to match when memory_id is not provided.",
                },
                "match_mode": {
                    "type": "string",
                    "enum": list(MATCH_MODES),
                    "description": "How to match content: exact or contains (default: exact).",
                },
                "new_content": {
                    "type": "string",
                    "description": "Updated memory text. Regenerates embedding when provided.",
                },
                "permanent": {"type": "boolean", "description": "true pins the memory, false unpins it."},
                "delete": {"type": "boolean", "description": "If true, delete the matched memory instead."},
                "version": {
                    "type": "integer",
                    "description": (
                        "Expected version for optimistic concurrency. If the memory has been updated since, "
                        "the update fails with a conflict error. Re-read the memory to get the current version."
                    ),
                },
            },
        },
    },
]


def _str_arg(params: Dict[str, Any], key: str) -> str:
    value = params.get(key)
    return value.strip() if isinstance(value, str) else ""


def _match_mode(params: Dict[str, Any]) -> str:
    return "contains" if params.get("match_mode") == "contains" else "exact"


async def resolve_memory_id(
    context: MemoryToolContext, memory_id: str, content: str, match_mode: str
) -> tuple[Optional[str], Optional[str]]:
    """Find the single memory a tool call refers to.

    Never guesses: several content matches produce an error listing up to five
    of them so the caller can resupply an id.

    Returns:
        Tuple of (memory id, error message); exactly one is set
    """
    memories = await context.store.list(context.agent_id, 0)
    if not memories:
        return None, "No stored memories found for this agent."

    if memory_id:
        for memory in memories:
            if memory.id == memory_id:
                return memory.id, None
        return None, f"Memory {memory_id} not found for this agent."

    query = content.lower()
    if match_mode == "contains":
        matches = [m for m in memories if query in m.content.lower()]
    else:
        matches = [m for m in memories if m.content.lower() == query]

    if not matches:
        return None, "No matching memory found."

    if len(matches) > 1:
        options = "\n".join(f"- {m.id}: {m.content}" for m in matches[:MAX_DISAMBIGUATION_OPTIONS])
        return None, f"Matched {len(matches)} memories. Provide memory_id to disambiguate.\n{options}"

    return matches[0].id, None


def _update_error(result: UpdateResult, memory_id: str, expected_version: Optional[int]) -> str:
    if result.status == "version_conflict":
        return (
            f"Version conflict: memory {memory_id} has been updated since version {expected_version}. "
            "Re-read the memory to get the current version before updating."
        )
    if result.status == "not_found":
        return f"Memory {memory_id} not found for this agent."
    return f"Failed to update memory {memory_id}."


async def add_memory_tool(params: Dict[str, Any], context: MemoryToolContext) -> ToolResult:
    """Store a new memory for the calling agent."""
    if not context.agent_id:
        return ToolResult.fail("Missing agent identity for memory operations.")

    content = _str_arg(params, "content")
    if not content:
        return ToolResult.fail("content is required.")

    permanent = params.get("permanent") is True
    memory = await create_memory_with_embedding(context.store, context.embeddings, context.agent_id, content, permanent)
    logger.info("Agent %s stored memory %s", context.agent_id, memory.id)
    return ToolResult(success=True, output=f"Stored memory {memory.id}{' (pinned)' if permanent else ''}.")


async def remove_memory_tool(params: Dict[str, Any], context: MemoryToolContext) -> ToolResult:
    """Delete one memory by id or by matching its text."""
    if not context.agent_id:
        return ToolResult.fail("Missing agent identity for memory operations.")

    memory_id = _str_arg(params, "memory_id")
    content = _str_arg(params, "content")
    if not memory_id and not content:
        return ToolResult.fail("Provide memory_id or content.")

    target_id, error = await resolve_memory_id(context, memory_id, content, _match_mode(params))
    if target_id is None:
        return ToolResult.fail(error or "No matching memory found.")

    if not await context.store.delete(target_id):
        return ToolResult.fail(f"Failed to delete memory {target_id}.")
    return ToolResult(success=True, output=f"Deleted memory {target_id}.")


async def update_memory_tool(params: Dict[str, Any], context: MemoryToolContext) -> ToolResult:
    """Edit content, pin/unpin, or delete one memory.

    Content and pin changes land in a single versioned write.
    """
    if not context.agent_id:
        return ToolResult.fail("Missing agent identity for memory operations.")

    memory_id = _str_arg(params, "memory_id")
    content = _str_arg(params, "content")
    has_new_content = isinstance(params.get("new_content"), str)
    new_content = _str_arg(params, "new_content")
    has_permanent = isinstance(params.get("permanent"), bool)
    permanent = params.get("permanent") if has_permanent else None
    should_delete = params.get("delete") is True
    version = params.get("version")
    expected_version = version if isinstance(version, int) and not isinstance(version, bool) else None

    if not memory_id and not content:
        return ToolResult.fail("Provide memory_id or content.")

    if has_new_content and not new_content:
        return ToolResult.fail("new_content cannot be empty.")

    if should_delete and (has_new_content or has_permanent):
        return ToolResult.fail("delete=true cannot be combined with new_content or permanent.")

    if not should_delete and not has_new_content and not has_permanent:
        return ToolResult.fail("Provide at least one update: new_content, permanent, or delete=true.")

    target_id, error = await resolve_memory_id(context, memory_id, content, _match_mode(params))
    if target_id is None:
        return ToolResult.fail(error or "No matching memory found.")

    if should_delete:
        if not await context.store.delete(target_id):
            return ToolResult.fail(f"Failed to delete memory {target_id}.")
        return ToolResult(success=True, output=f"Deleted memory {target_id}.")

    pin_fields: Dict[str, Any] = {}
    if has_permanent:
        pin_fields["permanent"] = permanent
        if permanent:
            pin_fields["strength"] = 1.0

    if has_new_content:
        result = await update_memory_with_embedding(
            context.store, context.embeddings, target_id, new_content, expected_version, **pin_fields
        )
    else:
        result = await context.store.update(target_id, expected_version=expected_version, **pin_fields)

    if not result.ok:
        return ToolResult.fail(_update_error(result, target_id, expected_version))

    changes = []
    if has_new_content:
        changes.append("content")
    if has_permanent:
        changes.append("pinned" if permanent else "unpinned")
    return ToolResult(success=True, output=f"Updated memory {target_id} ({', '.join(changes)}).")


MEMORY_TOOL_HANDLERS = {
    "add_memory": add_memory_tool,
    "remove_memory": remove_memory_tool,
    "update_memory": update_memory_tool,
}
