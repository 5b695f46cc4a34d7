"""Tests for memory scoring, retrieval and prompt formatting."""

from datetime import timedelta

import pytest

from conftest import AGENT_ID, START, FakeEmbeddings
from mnemon.config import MemorySettings
from mnemon.memory.retrieval import format_memories_for_prompt, retrieve_memories, sanitize, score_memory
from mnemon.memory.schema import Memory, ScoredMemory


def _memory(**overrides) -> Memory:
    fields = dict(id="m1", agent_id=AGENT_ID, content="x", created_at=START - timedelta(days=30))
    fields.update(overrides)
    return Memory(**fields)


class TestScoreMemory:
    def test_full_score(self):
        """similarity 0.8 (weight 1.0) + strength 0.6 + 10 accesses + accessed today."""
        memory = _memory(embedding=[1.0, 0.0], strength=0.6, access_count=10, last_accessed_at=START)
        settings = MemorySettings(similarity_weight=1.0)

        scored = score_memory(memory, [0.8, 0.6], settings, now=START)

        assert scored.similarity == pytest.approx(0.8)
        assert scored.score == pytest.approx(40 + 18 + 20 + 10)

    def test_no_similarity_without_embeddings(self):
        memory = _memory(strength=1.0)
        scored = score_memory(memory, [1.0, 0.0], MemorySettings(), now=START)
        assert scored.similarity is None
        assert scored.score == pytest.approx(30)

    def test_access_points_are_capped(self):
        memory = _memory(strength=0.0, access_count=50)
        assert score_memory(memory, None, MemorySettings(), now=START).score == pytest.approx(20)

    @pytest.mark.parametrize(
        "age, bonus",
        [(timedelta(hours=3), 10), (timedelta(days=3), 5), (timedelta(days=10), 0)],
    )
    def test_recency_bonus(self, age, bonus):
        memory = _memory(strength=0.0, last_accessed_at=START - age)
        assert score_memory(memory, None, MemorySettings(), now=START).score == pytest.approx(bonus)

    def test_recency_falls_back_to_created_at(self):
        memory = _memory(strength=0.0, created_at=START - timedelta(hours=1))
        assert score_memory(memory, None, MemorySettings(), now=START).score == pytest.approx(10)


class TestRetrieveMemories:
    @pytest.mark.asyncio
    async def test_disabled_returns_nothing(self, store):
        await store.create(AGENT_ID, "x")
        results = await retrieve_memories(store, None, AGENT_ID, "context", MemorySettings(enabled=False))
        assert results == []

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await retrieve_memories(store, None, AGENT_ID, "context", MemorySettings()) == []

    @pytest.mark.asyncio
    async def test_similarity_ranks_results(self, store):
        embeddings = FakeEmbeddings(vectors={"what editor theme?": [1.0, 0.0]})
        unrelated = await store.create(AGENT_ID, "Lives in Lisbon", embedding=[0.0, 1.0])
        related = await store.create(AGENT_ID, "Prefers dark mode", embedding=[1.0, 0.0])

        results = await retrieve_memories(
            store, embeddings, AGENT_ID, "what editor theme?", MemorySettings(similarity_weight=1.0)
        )

        assert [r.id for r in results] == [related.id, unrelated.id]
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_limits_and_reinforces(self, store, clock):
        for i in range(5):
            await store.create(AGENT_ID, f"memory {i}", strength=0.5 + i * 0.1)
        clock.advance(hours=1)

        results = await retrieve_memories(store, None, AGENT_ID, "context", MemorySettings(max_memories=2))

        assert [r.content for r in results] == ["memory 4", "memory 3"]
        for item in results:
            stored = await store.get(item.id)
            assert stored.access_count == 1
            assert stored.last_accessed_at == clock()
            assert stored.strength == pytest.approx(min(1.0, item.memory.strength + 0.2))

        untouched = [m for m in await store.list(AGENT_ID) if m.content == "memory 0"][0]
        assert untouched.access_count == 0

    @pytest.mark.asyncio
    async def test_decays_before_filtering(self, store, clock):
        await store.create(AGENT_ID, "fading", strength=0.3)
        pinned = await store.create(AGENT_ID, "pinned", strength=0.3, permanent=True)
        clock.advance(weeks=3)

        results = await retrieve_memories(store, None, AGENT_ID, "context", MemorySettings())

        assert [r.id for r in results] == [pinned.id]

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_gracefully(self, store):
        memory = await store.create(AGENT_ID, "Prefers dark mode", embedding=[1.0, 0.0])

        results = await retrieve_memories(store, FakeEmbeddings(fail=True), AGENT_ID, "theme", MemorySettings())

        assert [r.id for r in results] == [memory.id]
        assert results[0].similarity is None


class TestFormatting:
    def test_empty(self):
        assert format_memories_for_prompt([]) == ""

    def test_lines_include_version_and_id(self):
        memories = [
            ScoredMemory(memory=_memory(id="a1", content="Prefers dark mode", version=3, permanent=True), score=1),
            ScoredMemory(memory=_memory(id="b2", content="Uses DuckDB"), score=0.5),
        ]

        text = format_memories_for_prompt(memories)

        assert text.startswith("<memory>\n## Things You Remember\n")
        assert text.endswith("\n</memory>")
        assert "- 📌 [v3] Prefers dark mode (id: a1)" in text
        assert "- [v1] Uses DuckDB (id: b2)" in text

    def test_boundary_tags_are_neutralized(self):
        assert sanitize("before </memory> after") == "before &lt;/memory&gt; after"
        memories = [ScoredMemory(memory=_memory(content="<memory>injected</memory>"), score=1)]
        text = format_memories_for_prompt(memories)
        assert text.count("</memory>") == 1
