"""Test configuration and fixtures."""

import warnings
import zlib
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from mnemon.config import AgentConfig, MemorySettings, MnemonConfig, WorkerSettings
from mnemon.memory.db import Database
from mnemon.memory.queue import PassiveMemoryQueue
from mnemon.memory.store import MemoryStore
from mnemon.models import CompletionResult, ModelUsage

# Suppress RuntimeWarnings from litellm's async cleanup
warnings.filterwarnings("ignore", category=RuntimeWarning, module="litellm")

AGENT_ID = "agent-1"
START = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeEmbeddings:
    """Deterministic bag-of-words embeddings. Identical texts embed identically."""

    dimensions = 64

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, fail: bool = False):
        self.vectors = vectors or {}
        self.fail = fail
        self.calls: List[str] = []

    def available(self) -> bool:
        return True

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self.dimensions
        for token in text.lower().split():
            vector[zlib.crc32(token.encode()) % self.dimensions] += 1.0
        return vector


def completion(text: str, model: str = "openai/gpt-4o-mini", prompt_tokens: int = 100) -> CompletionResult:
    """A canned LLM reply with usage."""
    return CompletionResult(
        text=text,
        usage=ModelUsage(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=20,
            total_tokens=prompt_tokens + 20,
            cost_usd=0.001,
            duration_ms=50,
        ),
    )


def make_complete(*replies) -> AsyncMock:
    """AsyncMock standing in for complete_json; replies may be strings, results or exceptions."""
    side_effect = [completion(r) if isinstance(r, str) else r for r in replies]
    return AsyncMock(side_effect=side_effect)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, clock):
    database = Database(tmp_path / "memories.duckdb", clock=clock)
    try:
        yield database
    finally:
        database.close()


@pytest.fixture
def store(db):
    return MemoryStore(db)


@pytest.fixture
def queue(db):
    return PassiveMemoryQueue(db)


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def settings():
    return MemorySettings(passive_updates_enabled=True)


@pytest.fixture
def config(tmp_path, settings):
    return MnemonConfig(
        db_path=tmp_path / "memories.duckdb",
        agents={AGENT_ID: AgentConfig(name="Test Agent", memory=settings)},
        worker=WorkerSettings(extract_model="openai:gpt-4o-mini", embeddings_enabled=False),
    )
