"""Tests for candidate reconciliation."""

import json

import pytest

from conftest import AGENT_ID, FakeEmbeddings, make_complete
from mnemon.exceptions import ProviderError
from mnemon.memory.schema import ActorIdentity, Memory
from mnemon.passive.extraction import Candidate
from mnemon.passive.reconcile import (
    RECONCILE_SYSTEM_PROMPT,
    build_reconcile_prompt,
    find_keyword_matches,
    keyword_similarity,
    parse_reconcile_response,
    reconcile_candidates,
    tokenize,
)

MODEL = "openai:gpt-4o-mini"


def _candidate(content="User prefers dark mode in editor", confidence=0.9, kind="fact"):
    return Candidate(content=content, kind=kind, confidence=confidence, reason="stated")


def _reply(*resolutions):
    return json.dumps({"resolutions": list(resolutions)})


class TestKeywordSimilarity:
    def test_jaccard(self):
        assert keyword_similarity("User prefers dark mode", "User prefers dark mode in editor") == pytest.approx(0.8)

    def test_stop_words_and_short_tokens_are_ignored(self):
        assert tokenize("The user is on a VM at 9am") == ["user", "9am"]

    def test_no_tokens(self):
        assert keyword_similarity("a an the", "User prefers dark mode") == 0.0

    def test_disjoint(self):
        assert keyword_similarity("Lives in Lisbon", "Prefers dark mode") == 0.0

    def test_keyword_matches_are_thresholded(self):
        memories = [
            Memory(id="close", agent_id=AGENT_ID, content="User prefers dark mode"),
            Memory(id="far", agent_id=AGENT_ID, content="Deploys with docker compose"),
        ]

        matches = find_keyword_matches(_candidate(), memories)

        assert [m.memory_id for m in matches] == ["close"]
        assert matches[0].embedding_similarity is None
        assert matches[0].combined_similarity == pytest.approx(0.8)


class TestParseReconcileResponse:
    def test_valid_with_camel_case_keys(self):
        [resolution] = parse_reconcile_response(
            _reply({"candidateIndex": 0, "action": "update", "targetMemoryId": "m1", "content": " new  text "})
        )
        assert resolution.candidate_index == 0
        assert resolution.action == "update"
        assert resolution.target_memory_id == "m1"
        assert resolution.content == "new text"
        assert resolution.confidence == 0.0

    @pytest.mark.parametrize(
        "item",
        [
            {"candidateIndex": 0, "action": "merge"},
            {"candidateIndex": "0", "action": "create"},
            {"action": "create"},
            "create",
        ],
    )
    def test_malformed_items_are_dropped(self, item):
        assert parse_reconcile_response(_reply(item)) == []

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"resolutions": {}}'])
    def test_malformed_replies(self, raw):
        assert parse_reconcile_response(raw) == []

    def test_confidence_is_clamped(self):
        [high, bogus] = parse_reconcile_response(
            _reply(
                {"candidateIndex": 0, "action": "create", "confidence": 3},
                {"candidateIndex": 1, "action": "create", "confidence": "high"},
            )
        )
        assert high.confidence == 1.0
        assert bogus.confidence == 0.0

    def test_empty_target_is_none(self):
        [resolution] = parse_reconcile_response(_reply({"candidateIndex": 0, "action": "update", "targetMemoryId": ""}))
        assert resolution.target_memory_id is None


class TestReconcileCandidates:
    @pytest.mark.asyncio
    async def test_no_memories_skips_model(self, store):
        complete = make_complete()
        candidates = [_candidate()]

        result = await reconcile_candidates(store, None, AGENT_ID, candidates, [], MODEL, complete)

        assert result.candidates == candidates
        assert result.usage is None
        complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_candidates_skips_model(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete()

        result = await reconcile_candidates(store, None, AGENT_ID, [], [memory], MODEL, complete)

        assert result.candidates == []
        complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_related_memories_skips_model(self, store):
        memory = await store.create(AGENT_ID, "Lives in Lisbon")
        complete = make_complete()
        candidates = [_candidate()]

        result = await reconcile_candidates(store, None, AGENT_ID, candidates, [memory], MODEL, complete)

        assert result.candidates == candidates
        complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_targets_existing_memory(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete(
            _reply(
                {
                    "candidateIndex": 0,
                    "action": "update",
                    "targetMemoryId": memory.id,
                    "content": "User prefers dark mode in every editor",
                    "reason": "refines existing",
                    "confidence": 0.95,
                }
            )
        )

        result = await reconcile_candidates(store, None, AGENT_ID, [_candidate()], [memory], MODEL, complete)

        [candidate] = result.candidates
        assert candidate.target_memory_id == memory.id
        assert candidate.content == "User prefers dark mode in every editor"
        assert candidate.confidence == 0.95
        assert candidate.kind == "fact"
        assert result.usage.total_tokens == 120

        [decision] = result.decisions
        assert decision.action == "update"
        assert decision.top_match.memory_id == memory.id
        assert decision.to_dict()["top_match"]["keyword_similarity"] == pytest.approx(0.8)

        system_prompt, prompt, model = complete.call_args.args
        assert system_prompt == RECONCILE_SYSTEM_PROMPT
        assert memory.id in prompt
        assert model == MODEL

    @pytest.mark.asyncio
    async def test_skip_drops_candidate(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete(_reply({"candidateIndex": 0, "action": "skip", "reason": "duplicate"}))

        result = await reconcile_candidates(store, None, AGENT_ID, [_candidate()], [memory], MODEL, complete)

        assert result.candidates == []
        assert result.skipped == [{"reason": "reconcile_skip", "content": "User prefers dark mode in editor"}]
        assert result.decisions[0].reason == "duplicate"

    @pytest.mark.asyncio
    async def test_create_keeps_candidate_fields_when_model_omits_them(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete(_reply({"candidateIndex": 0, "action": "create", "targetMemoryId": memory.id}))

        result = await reconcile_candidates(store, None, AGENT_ID, [_candidate(confidence=0.8)], [memory], MODEL, complete)

        [candidate] = result.candidates
        assert candidate.content == "User prefers dark mode in editor"
        assert candidate.confidence == 0.8
        assert candidate.reason == "stated"
        assert candidate.target_memory_id is None

    @pytest.mark.asyncio
    async def test_unresolved_and_out_of_range(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        candidates = [_candidate(), _candidate("Lives in Lisbon")]
        complete = make_complete(
            _reply(
                {"candidateIndex": 5, "action": "skip"},
                {"candidateIndex": -1, "action": "skip"},
            )
        )

        result = await reconcile_candidates(store, None, AGENT_ID, candidates, [memory], MODEL, complete)

        assert result.candidates == candidates
        assert result.decisions == []
        assert result.skipped == []

    @pytest.mark.asyncio
    async def test_embedding_matches_are_merged(self, store):
        embeddings = FakeEmbeddings(
            vectors={"Enjoys a darker color scheme": [1.0, 0.0], "User prefers dark mode": [0.9, 0.1]}
        )
        memory = await store.create(AGENT_ID, "User prefers dark mode", embedding=[0.9, 0.1])
        complete = make_complete(_reply({"candidateIndex": 0, "action": "skip"}))

        result = await reconcile_candidates(
            store, embeddings, AGENT_ID, [_candidate("Enjoys a darker color scheme")], [memory], MODEL, complete
        )

        top = result.decisions[0].top_match
        assert top.memory_id == memory.id
        assert top.keyword_similarity == 0.0
        assert top.embedding_similarity > 0.72
        assert top.combined_similarity == pytest.approx(top.embedding_similarity)

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete(ProviderError("rate limited", model=MODEL, status_code=429))

        with pytest.raises(ProviderError):
            await reconcile_candidates(store, None, AGENT_ID, [_candidate()], [memory], MODEL, complete)

    @pytest.mark.asyncio
    async def test_actor_identity_shapes_memory_style(self, store):
        memory = await store.create(AGENT_ID, "User prefers dark mode")
        complete = make_complete(_reply())
        actor = ActorIdentity(display_name="Ana", source="discord")

        await reconcile_candidates(store, None, AGENT_ID, [_candidate()], [memory], MODEL, complete, actor=actor)

        prompt = complete.call_args.args[1]
        assert 'include "Ana (discord)" (or "Ana\'s") explicitly instead of generic "user".' in prompt


class TestBuildReconcilePrompt:
    def test_generic_style_without_identity(self):
        prompt = build_reconcile_prompt([])

        assert 'Personal memory style: avoid generic "user" phrasing when identity is known.' in prompt
        assert prompt.index("For action=skip") < prompt.index("Personal memory style")
