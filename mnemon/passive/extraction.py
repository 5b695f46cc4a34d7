"""Candidate memory extraction from conversation transcripts."""

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, ValidationError, field_validator

from mnemon.memory.retrieval import sanitize
from mnemon.memory.schema import ActorIdentity
from mnemon.models import CompletionResult, ModelUsage, complete_json
from mnemon.passive.transcript import normalize_text

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 10

CompleteFn = Callable[[str, str, str], Awaitable[CompletionResult]]

EXTRACTION_SYSTEM_PROMPT = "\n".join(
    [
        "You extract long-term memories from conversations between a user and an AI assistant.",
        "Identify information the assistant should remember for future conversations.",
        "",
        "EXTRACT:",
        "- Facts about users: names, preferences, roles, projects, relationships, goals",
        "- Project knowledge: tech stack, conventions, repository paths, deployment details",
        "- Decisions and agreements: choices made, policies established, constraints agreed upon",
        "- Task state worth resuming: in-progress work, blockers, next steps",
        "- Corrections: when the user corrects the assistant, remember the right answer",
        "",
        "DO NOT EXTRACT:",
        "- General knowledge the model already has (definitions, science facts, how-tos)",
        "- The assistant's own phrasing or responses",
        '- Transient status such as "tests pass" or "server is running"',
        "- Statements about the assistant's own capabilities or limitations",
        "- Greetings, acknowledgements, or conversational filler",
        "- One-off execution details that won't matter later",
        "",
        "Most conversations contain nothing worth remembering; an empty list is usually correct.",
        "",
        "Return strict JSON only.",
    ]
)

OUTPUT_CONTRACT = (
    'Output JSON: {"memories":[{"content":"...","kind":"fact|task|digest","confidence":0.0-1.0,"reason":"..."}]}'
)


@dataclass
class Candidate:
    """A proposed memory produced by extraction, before reconciliation."""

    content: str
    kind: str
    confidence: float
    reason: str = ""
    target_memory_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ParseFailure:
    """A model output item that could not be turned into a Candidate."""

    reason: str
    raw: Any = None


ParseResult = Union[Candidate, ParseFailure]


@dataclass
class ExtractionResult:
    candidates: List[Candidate] = field(default_factory=list)
    failures: List[ParseFailure] = field(default_factory=list)
    usage: Optional[ModelUsage] = None


def clamp_probability(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


class CandidatePayload(BaseModel):
    """Shape of one item in the extraction reply."""

    model_config = ConfigDict(extra="ignore")

    content: str
    kind: Literal["fact", "task", "digest"]
    confidence: Union[StrictInt, StrictFloat]
    reason: str = ""

    @field_validator("content")
    @classmethod
    def normalize_content(cls, v: str) -> str:
        v = normalize_text(v)
        if not v:
            raise ValueError("content is empty")
        return v

    @field_validator("reason", mode="before")
    @classmethod
    def normalize_reason(cls, v):
        return normalize_text(v) if isinstance(v, str) else ""


def parse_candidate(value: Any) -> ParseResult:
    """Validate one extraction item. Never raises."""
    if not isinstance(value, dict):
        return ParseFailure(reason="not_an_object", raw=value)

    try:
        payload = CandidatePayload.model_validate(value)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        return ParseFailure(reason=f"invalid_fields:{','.join(fields)}", raw=value)

    return Candidate(
        content=payload.content,
        kind=payload.kind,
        confidence=clamp_probability(payload.confidence),
        reason=payload.reason,
    )


def parse_extraction_results(raw: str) -> List[ParseResult]:
    """Parse a ``{"memories": [...]}`` reply into tagged results."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return [ParseFailure(reason="invalid_json", raw=raw)]

    if not isinstance(parsed, dict):
        return [ParseFailure(reason="not_an_object", raw=raw)]

    memories = parsed.get("memories")
    if not isinstance(memories, list):
        return []

    return [parse_candidate(item) for item in memories]


def parse_extraction_response(raw: str) -> List[Candidate]:
    """Valid candidates from an extraction reply, at most CANDIDATE_LIMIT."""
    candidates = [r for r in parse_extraction_results(raw) if isinstance(r, Candidate)]
    return candidates[:CANDIDATE_LIMIT]


def build_extraction_prompt(transcript: str, extraction_hint: str = "", actor: Optional[ActorIdentity] = None) -> str:
    parts = [
        "Review the conversation transcript below and extract any memories worth keeping.",
        "Return 0 memories if nothing new or valuable was said.",
        "",
    ]
    if extraction_hint:
        parts += [f"Agent-specific guidance: {sanitize(extraction_hint)}", ""]
    if actor is not None and actor.name:
        parts += [
            f"Conversation actor identity: {sanitize(actor.label)}",
            "When storing personal facts or preferences about this user, include their identity in the content.",
            f"Prefer \"{sanitize(actor.possessive_label)} ...\" over generic \"User's ...\" phrasing.",
            "",
        ]
    parts += [
        OUTPUT_CONTRACT,
        'Return {"memories":[]} if nothing is worth remembering.',
        "",
        "Conversation transcript:",
        sanitize(transcript),
    ]
    return "\n".join(parts)


async def extract_candidates(
    transcript: str,
    model: str,
    extraction_hint: str = "",
    complete: Optional[CompleteFn] = None,
    actor: Optional[ActorIdentity] = None,
) -> ExtractionResult:
    """Ask the model for memory candidates in a transcript.

    Raises:
        ConfigurationError: If the model or credentials are missing
        ProviderError: If the request fails
    """
    complete = complete or complete_json
    prompt = build_extraction_prompt(transcript, extraction_hint, actor)
    response = await complete(EXTRACTION_SYSTEM_PROMPT, prompt, model)

    results = parse_extraction_results(response.text)
    candidates = [r for r in results if isinstance(r, Candidate)][:CANDIDATE_LIMIT]
    failures = [r for r in results if isinstance(r, ParseFailure)]
    if failures:
        logger.debug("Dropped %d unparseable extraction item(s)", len(failures))

    return ExtractionResult(candidates=candidates, failures=failures, usage=response.usage)
