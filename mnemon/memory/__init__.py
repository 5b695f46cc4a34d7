"""Agent memory storage, retrieval and mutation."""

from mnemon.memory.db import Database
from mnemon.memory.embeddings import EmbeddingProvider
from mnemon.memory.queue import PassiveMemoryQueue
from mnemon.memory.retrieval import format_memories_for_prompt, retrieve_memories
from mnemon.memory.schema import ActorIdentity, Memory, QueueEntry, ScoredMemory, UpdateResult
from mnemon.memory.store import MemoryStore

__all__ = [
    "ActorIdentity",
    "Database",
    "EmbeddingProvider",
    "Memory",
    "MemoryStore",
    "PassiveMemoryQueue",
    "QueueEntry",
    "ScoredMemory",
    "UpdateResult",
    "format_memories_for_prompt",
    "retrieve_memories",
]
