"""Tests for vector similarity, semantic recall and history merging."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from orrery_agents import Agent, AgentEngine, LoopState
from orrery_engine.context import OperationContext
from orrery_engine.exceptions import ModelBackendError
from orrery_memory import (
    Embedder,
    InMemoryMemoryStore,
    InMemoryVectorIndex,
    LiteLLMEmbedder,
    MemoryConfig,
    MemoryMessage,
    SemanticRecallOptions,
    cosine_similarity,
    load_history,
    merge_messages,
)
from tests.conftest import ScriptedBackend, reply

pytestmark = pytest.mark.unit

VOCAB = ["tea", "coffee", "cat", "dog", "paris", "rome"]
BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


class KeywordEmbedder(Embedder):
    """Bag-of-words over a fixed vocabulary: deterministic and dependency free."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        if self.fail:
            raise ModelBackendError("embedding service down")
        return [[float(word in text.lower()) for word in VOCAB] for text in texts]


def msg(content: str, minutes: int, role: str = "user") -> MemoryMessage:
    return MemoryMessage(role=role, content=content, created_at=BASE + timedelta(minutes=minutes))


# ── Vectors ───────────────────────────────────────────────────────────────────

class TestCosineSimilarity:
    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == 0.0
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError, match="dimensions differ"):
            cosine_similarity([1, 2], [1, 2, 3])


class TestInMemoryVectorIndex:
    @pytest.mark.asyncio
    async def test_search_orders_filters_and_limits(self):
        index = InMemoryVectorIndex()
        await index.upsert("a", [1, 0], {"user_id": "u1"})
        await index.upsert("b", [0.9, 0.1], {"user_id": "u1"})
        await index.upsert("c", [1, 0], {"user_id": "u2"})
        await index.upsert("d", [0, 1], {"user_id": "u1"})

        hits = await index.search([1, 0], limit=5, threshold=0.5, where={"user_id": "u1"})

        assert [h.id for h in hits] == ["a", "b"]
        assert (await index.search([1, 0], limit=1))[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_delete(self):
        index = InMemoryVectorIndex()
        await index.upsert("a", [1, 0])
        await index.delete(["a", "missing"])
        assert len(index) == 0


# ── Merging ───────────────────────────────────────────────────────────────────

class TestMergeMessages:
    def setup_method(self):
        self.r1, self.r2 = msg("recent 1", 10), msg("recent 2", 11)
        self.s1, self.s2 = msg("similar 1", 1), msg("similar 2", 2)

    def test_append_is_default(self):
        assert merge_messages([self.r1, self.r2], [self.s1]) == [self.r1, self.r2, self.s1]

    def test_prepend(self):
        assert merge_messages([self.r1], [self.s1, self.s2], "prepend") == [self.s1, self.s2, self.r1]

    def test_interleave(self):
        merged = merge_messages([self.r1, self.r2], [self.s1, self.s2], "interleave")
        assert merged == [self.r1, self.s1, self.r2, self.s2]

    def test_hits_already_in_window_are_dropped(self):
        assert merge_messages([self.r1, self.r2], [self.r2, self.s1, self.s1]) == [self.r1, self.r2, self.s1]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            merge_messages([], [], "shuffle")


# ── Recall ────────────────────────────────────────────────────────────────────

class TestLoadHistory:
    async def seeded_store(self, embedder: Embedder) -> InMemoryMemoryStore:
        store = InMemoryMemoryStore(embedder=embedder)
        await store.add_messages(
            [msg("I love tea", 1), msg("Noted, tea it is", 2, "assistant"),
             msg("My cat is called Rome", 3), msg("Lovely cat", 4, "assistant"),
             msg("Weather is nice", 5), msg("Indeed", 6, "assistant")],
            "u1", "c1",
        )
        return store

    @pytest.mark.asyncio
    async def test_semantic_hits_join_recent_window(self):
        store = await self.seeded_store(KeywordEmbedder())

        history = await load_history(
            store, user_id="u1", conversation_id="c1", query="what tea do I like?", limit=2,
            semantic=SemanticRecallOptions(limit=3, threshold=0.5),
        )

        assert [m.content for m in history] == ["Weather is nice", "Indeed", "I love tea", "Noted, tea it is"]

    @pytest.mark.asyncio
    async def test_search_is_scoped_to_user(self):
        store = await self.seeded_store(KeywordEmbedder())
        await store.add_message(msg("other user tea", 7), "u2", "c9")

        hits = await store.search_similar("tea", user_id="u1", threshold=0.5)

        assert "other user tea" not in [h.message.content for h in hits]
        assert all(h.score >= 0.5 for h in hits)

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_recent(self):
        embedder = KeywordEmbedder()
        store = await self.seeded_store(embedder)
        embedder.fail = True

        history = await load_history(
            store, user_id="u1", conversation_id="c1", query="tea", limit=2,
            semantic=SemanticRecallOptions(),
        )

        assert [m.content for m in history] == ["Weather is nice", "Indeed"]

    @pytest.mark.asyncio
    async def test_store_without_search_uses_recency(self):
        store = InMemoryMemoryStore()
        await store.add_messages([msg("I love tea", 1), msg("hello", 2)], "u1", "c1")

        history = await load_history(
            store, user_id="u1", conversation_id="c1", query="tea", limit=1,
            semantic=SemanticRecallOptions(),
        )

        assert [m.content for m in history] == ["hello"]

    @pytest.mark.asyncio
    async def test_pruned_messages_leave_the_index(self):
        store = InMemoryMemoryStore(storage_limit=2, embedder=KeywordEmbedder())
        await store.add_messages([msg("tea", 1), msg("coffee", 2), msg("cat", 3)], "u1", "c1")

        hits = await store.search_similar("tea", user_id="u1", threshold=0.5)

        assert hits == []

    @pytest.mark.asyncio
    async def test_engine_uses_semantic_recall(self, config):
        store = await self.seeded_store(KeywordEmbedder())
        backend = ScriptedBackend(reply("You like tea."))
        memory = MemoryConfig(
            store=store, history_limit=2,
            semantic=SemanticRecallOptions(limit=2, threshold=0.5, merge_strategy="prepend"),
        )
        agent = Agent("assistant", "x", backend, memory=memory, config=config)

        await agent.run("Which tea do I like?", OperationContext(user_id="u1", conversation_id="c1"))

        contents = [m["content"] for m in backend.invocations[0][1:]]
        assert contents == ["I love tea", "Noted, tea it is", "Weather is nice", "Indeed", "Which tea do I like?"]


class TestLiteLLMEmbedder:
    @pytest.mark.asyncio
    async def test_vectors_returned_in_input_order(self):
        response = AsyncMock()
        response.data = [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]
        with patch("orrery_memory.embeddings.aembedding", AsyncMock(return_value=response)) as mocked:
            vectors = await LiteLLMEmbedder("text-embedding-3-small").embed(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert mocked.await_args.kwargs["input"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_provider_errors_are_wrapped(self):
        with patch("orrery_memory.embeddings.aembedding", AsyncMock(side_effect=RuntimeError("401"))):
            with pytest.raises(ModelBackendError, match="401"):
                await LiteLLMEmbedder().embed(["a"])

    @pytest.mark.asyncio
    async def test_empty_input_skips_the_call(self):
        with patch("orrery_memory.embeddings.aembedding", AsyncMock()) as mocked:
            assert await LiteLLMEmbedder().embed([]) == []
        mocked.assert_not_awaited()


# ── Embedder outages ──────────────────────────────────────────────────────────

class BrokenEmbedder(Embedder):
    """A third-party embedder that fails with its own exception type."""

    async def embed(self, texts):
        raise RuntimeError("vector service unreachable")


class TestEmbedderOutage:
    @pytest.mark.asyncio
    async def test_failed_indexing_still_stores_messages(self):
        store = InMemoryMemoryStore(embedder=KeywordEmbedder(fail=True))

        await store.add_messages([msg("I love tea", 1), msg("Noted", 2, "assistant")], "u1", "c1")

        assert [m.content for m in await store.get_messages("u1", "c1")] == ["I love tea", "Noted"]

    @pytest.mark.asyncio
    async def test_custom_embedder_error_falls_back_to_recent(self):
        store = InMemoryMemoryStore(embedder=BrokenEmbedder())
        await store.add_messages([msg("I love tea", 1), msg("hello", 2)], "u1", "c1")

        history = await load_history(
            store, user_id="u1", conversation_id="c1", query="tea", limit=1,
            semantic=SemanticRecallOptions(),
        )

        assert [m.content for m in history] == ["hello"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("embedder", [KeywordEmbedder(fail=True), BrokenEmbedder()], ids=["backend", "custom"])
    async def test_run_completes_when_embedder_is_down(self, config, embedder):
        store = InMemoryMemoryStore(embedder=embedder)
        memory = MemoryConfig(store=store, semantic=SemanticRecallOptions())
        agent = Agent("assistant", "x", ScriptedBackend(reply("answer")), memory=memory, config=config)
        engine = AgentEngine(agent)

        result = await engine.run("hi", OperationContext(user_id="u1", conversation_id="c1"))

        assert result.text == "answer"
        assert engine.state == LoopState.COMPLETED
        stored = await store.get_messages("u1", "c1")
        assert [(m.role, m.content) for m in stored] == [("user", "hi"), ("assistant", "answer")]
