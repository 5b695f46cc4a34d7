"""Build extraction transcripts from recorded run messages."""

import json
import re
from typing import Iterable, Optional

from mnemon.memory.schema import ActorIdentity, RunMessage

CHARS_PER_TOKEN = 4

ROLE_LABELS = {"user": "User", "assistant": "Assistant"}

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def parse_message_text(content: Optional[str]) -> Optional[str]:
    """Extract readable text from a stored message payload.

    JSON object payloads are structured messages and only their ``text`` field
    is used; anything else is taken as plain text.
    """
    if not content:
        return None

    try:
        parsed = json.loads(content)
    except ValueError:
        parsed = None

    if not isinstance(parsed, dict):
        normalized = normalize_text(content)
        return normalized or None
    text = parsed.get("text")
    if not isinstance(text, str):
        return None
    normalized = normalize_text(text)
    return normalized or None


def build_transcript(messages: Iterable[RunMessage], actor: Optional[ActorIdentity] = None) -> str:
    """Render user and assistant messages as ``[Role]: text`` lines.

    User lines carry the actor's label when one is known, e.g. ``[User: Ana (@ana)]``.
    """
    user_label = f"User: {actor.label}" if actor is not None and actor.name else ROLE_LABELS["user"]
    lines = []
    for message in messages:
        label = user_label if message.role == "user" else ROLE_LABELS.get(message.role)
        if label is None:
            continue
        text = parse_message_text(message.content)
        if not text:
            continue
        lines.append(f"[{label}]: {text}")
    return "\n".join(lines)


def clamp_chars_for_token_budget(text: str, max_tokens: int) -> str:
    """Truncate to roughly ``max_tokens`` tokens, keeping the end of the text."""
    max_chars = max(1, max_tokens * CHARS_PER_TOKEN)
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]
