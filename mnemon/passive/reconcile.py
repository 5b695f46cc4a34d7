"""Reconcile extracted candidates against an agent's existing memories."""

import json
import logging
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from mnemon.memory.embeddings import EmbeddingProvider
from mnemon.memory.mutations import find_related_memories
from mnemon.memory.retrieval import sanitize
from mnemon.memory.schema import ActorIdentity, Memory
from mnemon.memory.store import MemoryStore
from mnemon.models import ModelUsage, complete_json
from mnemon.passive.extraction import Candidate, CompleteFn, clamp_probability
from mnemon.passive.transcript import normalize_text

logger = logging.getLogger(__name__)

KEYWORD_SIMILARITY_THRESHOLD = 0.35
EMBEDDING_SIMILARITY_THRESHOLD = 0.72
COMBINED_SIMILARITY_THRESHOLD = 0.70
MAX_RECONCILE_MATCHES = 3

KEYWORD_STOP_WORDS = frozenset(
    """
    a an and are as at be by for from has he in is it its of on or
    that the their this to was were with
    """.split()
)

RECONCILE_SYSTEM_PROMPT = "\n".join(
    [
        "You reconcile new memory candidates against existing stored memories.",
        "Decide per candidate whether to:",
        '- "create": keep it as a new memory',
        '- "update": replace or refine an existing memory (targetMemoryId is required)',
        '- "skip": drop it because it is redundant, noisy, or low value',
        "",
        "Prefer update when the candidate is a better or newer version of an existing memory.",
        "Prefer skip when the candidate duplicates an existing memory without improving it.",
        "Return strict JSON only.",
    ]
)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens of 3+ characters, stop words removed."""
    return [
        token
        for token in _TOKEN_SPLIT.split(normalize_text(text).lower())
        if len(token) >= 3 and token not in KEYWORD_STOP_WORDS
    ]


def keyword_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two texts' token sets."""
    a_tokens = set(tokenize(a))
    b_tokens = set(tokenize(b))
    if not a_tokens or not b_tokens:
        return 0.0
    return len(a_tokens & b_tokens) / len(a_tokens | b_tokens)


@dataclass
class SimilarityMatch:
    memory_id: str
    memory_version: int
    memory_content: str
    embedding_similarity: Optional[float]
    keyword_similarity: float
    combined_similarity: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReconcileResolution:
    candidate_index: int
    action: Literal["create", "update", "skip"]
    content: str = ""
    target_memory_id: Optional[str] = None
    reason: str = ""
    confidence: float = 0.0


@dataclass
class ReconcileDecision:
    """Receipt of one applied resolution, kept in the job summary."""

    candidate_index: int
    action: str
    target_memory_id: Optional[str]
    content: str
    reason: str
    confidence: float
    top_match: Optional[SimilarityMatch] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReconcileResult:
    candidates: List[Candidate]
    skipped: List[Dict[str, str]] = field(default_factory=list)
    decisions: List[ReconcileDecision] = field(default_factory=list)
    usage: Optional[ModelUsage] = None


class ResolutionPayload(BaseModel):
    """Shape of one item in the reconcile reply."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    candidate_index: StrictInt = Field(alias="candidateIndex")
    action: Literal["create", "update", "skip"]
    content: Any = ""
    target_memory_id: Any = Field(default=None, alias="targetMemoryId")
    reason: Any = ""
    confidence: Any = 0.0

    @field_validator("content", "reason")
    @classmethod
    def normalize_strings(cls, v):
        return normalize_text(v) if isinstance(v, str) else ""

    @field_validator("target_memory_id")
    @classmethod
    def require_non_empty_id(cls, v):
        return v if isinstance(v, str) and v else None

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return 0.0
        return clamp_probability(v)


def parse_reconcile_resolution(value: Any) -> Optional[ReconcileResolution]:
    if not isinstance(value, dict):
        return None
    try:
        payload = ResolutionPayload.model_validate(value)
    except ValidationError:
        return None
    return ReconcileResolution(
        candidate_index=payload.candidate_index,
        action=payload.action,
        content=payload.content,
        target_memory_id=payload.target_memory_id,
        reason=payload.reason,
        confidence=payload.confidence,
    )


def parse_reconcile_response(raw: str) -> List[ReconcileResolution]:
    """Parse a ``{"resolutions": [...]}`` reply, dropping malformed items. Never raises."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, dict) or not isinstance(parsed.get("resolutions"), list):
        return []

    resolutions = []
    for item in parsed["resolutions"]:
        resolution = parse_reconcile_resolution(item)
        if resolution is not None:
            resolutions.append(resolution)
    return resolutions


def find_keyword_matches(candidate: Candidate, memories: Sequence[Memory]) -> List[SimilarityMatch]:
    matches = []
    for memory in memories:
        score = keyword_similarity(candidate.content, memory.content)
        if score < KEYWORD_SIMILARITY_THRESHOLD:
            continue
        matches.append(
            SimilarityMatch(
                memory_id=memory.id,
                memory_version=memory.version,
                memory_content=memory.content,
                embedding_similarity=None,
                keyword_similarity=score,
                combined_similarity=score,
            )
        )
    matches.sort(key=lambda m: m.keyword_similarity, reverse=True)
    return matches[:MAX_RECONCILE_MATCHES]


def _is_relevant(match: SimilarityMatch) -> bool:
    return (
        (match.embedding_similarity or 0.0) >= EMBEDDING_SIMILARITY_THRESHOLD
        or match.keyword_similarity >= KEYWORD_SIMILARITY_THRESHOLD
        or match.combined_similarity >= COMBINED_SIMILARITY_THRESHOLD
    )


async def find_candidate_matches(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    candidate: Candidate,
    memories: Sequence[Memory],
) -> List[SimilarityMatch]:
    """Keyword and embedding neighbours of a candidate, merged by memory id."""
    by_id: Dict[str, SimilarityMatch] = {m.memory_id: m for m in find_keyword_matches(candidate, memories)}

    related = await find_related_memories(store, embeddings, agent_id, candidate.content, MAX_RECONCILE_MATCHES)
    for item in related:
        keyword = by_id[item.memory.id].keyword_similarity if item.memory.id in by_id else 0.0
        by_id[item.memory.id] = SimilarityMatch(
            memory_id=item.memory.id,
            memory_version=item.memory.version,
            memory_content=item.memory.content,
            embedding_similarity=item.similarity,
            keyword_similarity=keyword,
            combined_similarity=max(item.similarity, keyword),
        )

    matches = [m for m in by_id.values() if _is_relevant(m)]
    matches.sort(key=lambda m: m.combined_similarity, reverse=True)
    return matches[:MAX_RECONCILE_MATCHES]


def personal_memory_style(actor: Optional[ActorIdentity]) -> str:
    if actor is not None and actor.name:
        return (
            f"Personal memory style: when the memory is about the user, include \"{sanitize(actor.label)}\" "
            f"(or \"{sanitize(actor.possessive_label)}\") explicitly instead of generic \"user\"."
        )
    return 'Personal memory style: avoid generic "user" phrasing when identity is known.'


def build_reconcile_prompt(review: List[Dict[str, Any]], actor: Optional[ActorIdentity] = None) -> str:
    return "\n".join(
        [
            "Resolve each candidate.",
            "Output JSON:",
            '{"resolutions":[{"candidateIndex":0,"action":"create|update|skip","targetMemoryId":"optional id",'
            '"content":"canonical memory text","reason":"short reason","confidence":0.0-1.0}]}',
            "For action=update: targetMemoryId is required and content should be the final replacement text.",
            "For action=skip: content may be empty.",
            personal_memory_style(actor),
            "",
            "Candidates with related memories:",
            sanitize(json.dumps(review)),
        ]
    )


async def reconcile_candidates(
    store: MemoryStore,
    embeddings: Optional[EmbeddingProvider],
    agent_id: str,
    candidates: List[Candidate],
    memories: Sequence[Memory],
    model: str,
    complete: Optional[CompleteFn] = None,
    actor: Optional[ActorIdentity] = None,
) -> ReconcileResult:
    """Let the model decide create/update/skip for candidates that resemble stored memories.

    Candidates without related memories, and candidates the model leaves
    unresolved, pass through unchanged. No model call is made when nothing
    matches.

    Raises:
        ConfigurationError: If the model or credentials are missing
        ProviderError: If the request fails
    """
    if not candidates or not memories:
        return ReconcileResult(candidates=list(candidates))

    candidate_matches = []
    for candidate in candidates:
        candidate_matches.append(await find_candidate_matches(store, embeddings, agent_id, candidate, memories))

    review = [
        {
            "candidateIndex": index,
            "candidate": {
                "content": candidates[index].content,
                "kind": candidates[index].kind,
                "confidence": candidates[index].confidence,
                "reason": candidates[index].reason,
            },
            "relatedMemories": [
                {
                    "id": m.memory_id,
                    "version": m.memory_version,
                    "content": m.memory_content,
                    "embeddingSimilarity": m.embedding_similarity,
                    "keywordSimilarity": m.keyword_similarity,
                    "combinedSimilarity": m.combined_similarity,
                }
                for m in matches
            ],
        }
        for index, matches in enumerate(candidate_matches)
        if matches
    ]
    if not review:
        return ReconcileResult(candidates=list(candidates))

    complete = complete or complete_json
    response = await complete(RECONCILE_SYSTEM_PROMPT, build_reconcile_prompt(review, actor), model)

    by_index: Dict[int, ReconcileResolution] = {}
    for resolution in parse_reconcile_response(response.text):
        if 0 <= resolution.candidate_index < len(candidates):
            by_index[resolution.candidate_index] = resolution

    result = ReconcileResult(candidates=[], usage=response.usage)
    for index, candidate in enumerate(candidates):
        resolution = by_index.get(index)
        if resolution is None:
            result.candidates.append(candidate)
            continue

        content = resolution.content or candidate.content
        reason = resolution.reason or candidate.reason
        confidence = resolution.confidence if resolution.confidence > 0 else candidate.confidence
        matches = candidate_matches[index]

        result.decisions.append(
            ReconcileDecision(
                candidate_index=index,
                action=resolution.action,
                target_memory_id=resolution.target_memory_id,
                content=content,
                reason=reason,
                confidence=confidence,
                top_match=matches[0] if matches else None,
            )
        )

        if resolution.action == "skip":
            result.skipped.append({"reason": "reconcile_skip", "content": candidate.content})
            continue

        target = resolution.target_memory_id if resolution.action == "update" else None
        result.candidates.append(
            replace(candidate, content=content, reason=reason, confidence=confidence, target_memory_id=target)
        )

    logger.debug(
        "Reconciled %d candidate(s) for agent %s: %d decision(s), %d skipped",
        len(candidates),
        agent_id,
        len(result.decisions),
        len(result.skipped),
    )
    return result
