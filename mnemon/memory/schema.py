"""Memory and queue data structures."""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

MemoryKind = Literal["fact", "task", "digest"]
MEMORY_KINDS = ("fact", "task", "digest")

QUEUE_STATUSES = ("pending", "processing", "completed", "failed", "skipped")


@dataclass
class Memory:
    """A durable, scored, versioned knowledge unit belonging to one agent."""

    id: str
    agent_id: str
    content: str
    embedding: Optional[List[float]] = None
    strength: float = 1.0  # decays toward 0, boosted by reinforcement
    access_count: int = 0
    permanent: bool = False  # exempt from decay and eviction
    version: int = 1  # optimistic concurrency token
    kind: str = "fact"
    last_accessed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ScoredMemory:
    """A memory with its retrieval score. Only exists during retrieval."""

    memory: Memory
    score: float
    similarity: Optional[float] = None

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def content(self) -> str:
        return self.memory.content


@dataclass
class SimilarMemory:
    """A memory returned by a nearest-neighbour search."""

    memory: Memory
    similarity: float


@dataclass
class UpdateResult:
    """Outcome of a store update.

    ``status`` separates a missing row from a stale ``expected_version`` so
    callers can report the right thing.
    """

    status: Literal["updated", "not_found", "version_conflict"]
    memory: Optional[Memory] = None

    @property
    def ok(self) -> bool:
        return self.status == "updated"


@dataclass
class RunMessage:
    """One message of a completed run, as recorded by the integration layer."""

    job_id: str
    role: str  # user | assistant | tool | system
    content: Optional[str]
    seq: int = 0
    created_at: Optional[datetime] = None


@dataclass
class ActorIdentity:
    """Who the agent was talking to in a run.

    Used to phrase personal memories with a name instead of a generic "user".
    """

    display_name: Optional[str] = None
    handle: Optional[str] = None
    external_id: Optional[str] = None
    source: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        if self.display_name:
            return self.display_name
        if self.handle:
            return f"@{self.handle}"
        if self.external_id:
            return f"#{self.external_id}"
        return None

    @property
    def label(self) -> Optional[str]:
        """Name plus any identifying details, e.g. ``Ana (@ana, #42, discord)``."""
        name = self.name
        if name is None:
            return None
        details = []
        if self.handle and f"@{self.handle}" != name:
            details.append(f"@{self.handle}")
        if self.external_id and f"#{self.external_id}" != name:
            details.append(f"#{self.external_id}")
        if self.source:
            details.append(self.source)
        return f"{name} ({', '.join(details)})" if details else name

    @property
    def possessive_label(self) -> Optional[str]:
        name = self.name
        if name is None:
            return None
        return f"{name}'" if name.lower().endswith("s") else f"{name}'s"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActorIdentity":
        return cls(**{k: data.get(k) for k in ("display_name", "handle", "external_id", "source")})


@dataclass
class QueueEntry:
    """Work descriptor for passive extraction of one completed run."""

    id: str
    job_id: str
    agent_id: str
    work_item_id: Optional[str] = None
    dispatch_id: Optional[str] = None
    status: str = "pending"
    attempt_count: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    summary_json: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    actor_json: Optional[str] = None

    @property
    def summary(self) -> Optional[Dict[str, Any]]:
        if not self.summary_json:
            return None
        return json.loads(self.summary_json)

    @property
    def actor(self) -> Optional["ActorIdentity"]:
        if not self.actor_json:
            return None
        return ActorIdentity.from_dict(json.loads(self.actor_json))


@dataclass
class InferenceCall:
    """Auditable record of one model call made on behalf of a job."""

    job_id: str
    agent_id: str
    turn: int
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    attempt_kind: Optional[str] = None
    attempt_index: Optional[int] = None
    created_at: Optional[datetime] = None
