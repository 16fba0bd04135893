"""Contract tests run against every MemoryStore implementation."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from orrery_memory import InMemoryMemoryStore, MemoryMessage, SqlMemoryStore, WorkingMemoryScope
from orrery_memory.store import select_messages

BASE = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def msg(role: str, content, minutes: int = 0, **kwargs) -> MemoryMessage:
    return MemoryMessage(role=role, content=content, created_at=BASE + timedelta(minutes=minutes), **kwargs)


@pytest_asyncio.fixture(params=["inmemory", pytest.param("sql", marks=pytest.mark.sql)])
async def make_store(request):
    created = []

    async def factory(storage_limit: int = 100):
        if request.param == "inmemory":
            return InMemoryMemoryStore(storage_limit=storage_limit)
        store = SqlMemoryStore(
            "sqlite+aiosqlite://",
            storage_limit=storage_limit,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        await store.create_tables()
        created.append(store)
        return store

    yield factory
    for store in created:
        await store.close()


# ── Messages ──────────────────────────────────────────────────────────────────

class TestMessages:
    @pytest.mark.asyncio
    async def test_chronological_order_regardless_of_insert_order(self, make_store):
        store = await make_store()
        await store.add_messages([msg("assistant", "second", 2), msg("user", "first", 1)], "u1", "c1")
        await store.add_message(msg("user", "third", 3), "u1", "c1")

        messages = await store.get_messages("u1", "c1")

        assert [m.content for m in messages] == ["first", "second", "third"]
        assert all(a.created_at <= b.created_at for a, b in zip(messages, messages[1:]))

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_insert_order(self, make_store):
        store = await make_store()
        await store.add_messages([msg("user", "a"), msg("assistant", "b"), msg("user", "c")], "u1", "c1")
        assert [m.content for m in await store.get_messages("u1", "c1")] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent_oldest_first(self, make_store):
        store = await make_store()
        await store.add_messages([msg("user", f"m{i}", i) for i in range(6)], "u1", "c1")

        messages = await store.get_messages("u1", "c1", limit=3)

        assert [m.content for m in messages] == ["m3", "m4", "m5"]
        assert await store.get_messages("u1", "c1", limit=0) == []

    @pytest.mark.asyncio
    async def test_filters(self, make_store):
        store = await make_store()
        await store.add_messages(
            [msg("user", "q1", 1), msg("assistant", "a1", 2), msg("user", "q2", 3), msg("assistant", "a2", 4)],
            "u1", "c1",
        )

        by_role = await store.get_messages("u1", "c1", roles=["assistant"])
        window = await store.get_messages(
            "u1", "c1", after=BASE + timedelta(minutes=1), before=BASE + timedelta(minutes=4)
        )

        assert [m.content for m in by_role] == ["a1", "a2"]
        assert [m.content for m in window] == ["a1", "q2"]

    @pytest.mark.asyncio
    async def test_storage_limit_prunes_oldest(self, make_store):
        store = await make_store(storage_limit=3)
        for i in range(5):
            await store.add_message(msg("user", f"m{i}", i), "u1", "c1")

        assert [m.content for m in await store.get_messages("u1", "c1")] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_conversations_and_users_are_isolated(self, make_store):
        store = await make_store()
        await store.add_message(msg("user", "mine"), "u1", "c1")
        await store.add_message(msg("user", "other conversation"), "u1", "c2")
        await store.add_message(msg("user", "other user"), "u2", "c1")

        assert [m.content for m in await store.get_messages("u1", "c1")] == ["mine"]
        assert await store.get_messages("u3", "c1") == []

    @pytest.mark.asyncio
    async def test_anonymous_user(self, make_store):
        store = await make_store()
        await store.add_message(msg("user", "hello"), None, "c1")
        [stored] = await store.get_messages(None, "c1")
        assert stored.user_id is None
        assert stored.conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_fields_survive_storage(self, make_store):
        store = await make_store()
        original = msg(
            "assistant",
            [{"type": "text", "text": "see chart"}, {"type": "image_url", "image_url": {"url": "x"}}],
            tool_calls=[{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
            metadata={"finish_reason": "stop", "delegations": [{"agentName": "w", "response": "r"}]},
        )
        await store.add_message(original, "u1", "c1")

        [stored] = await store.get_messages("u1", "c1")

        assert stored.id == original.id
        assert stored.content == original.content
        assert stored.text == "see chart"
        assert stored.tool_calls == original.tool_calls
        assert stored.metadata == original.metadata
        assert stored.created_at == original.created_at

    @pytest.mark.asyncio
    async def test_clear_messages(self, make_store):
        store = await make_store()
        await store.add_messages([msg("user", "a"), msg("user", "b")], "u1", "c1")
        await store.add_message(msg("user", "keep"), "u1", "c2")

        assert await store.clear_messages("u1", "c1") == 2
        assert await store.get_messages("u1", "c1") == []
        assert len(await store.get_messages("u1", "c2")) == 1

    @pytest.mark.asyncio
    async def test_no_semantic_search_by_default(self, make_store):
        store = await make_store()
        assert store.supports_semantic_search is False
        with pytest.raises(NotImplementedError):
            await store.search_similar("q", user_id="u1")


# ── Working memory ────────────────────────────────────────────────────────────

class TestWorkingMemoryRecords:
    @pytest.mark.asyncio
    async def test_set_get_overwrite_clear(self, make_store):
        store = await make_store()
        scope = WorkingMemoryScope.CONVERSATION

        assert await store.get_working_memory(scope, "c1") is None
        await store.set_working_memory(scope, "c1", "v1")
        await store.set_working_memory(scope, "c1", "v2")

        record = await store.get_working_memory(scope, "c1")
        assert record.content == "v2"
        assert record.scope == scope
        assert await store.clear_working_memory(scope, "c1") is True
        assert await store.get_working_memory(scope, "c1") is None

    @pytest.mark.asyncio
    async def test_scopes_do_not_collide(self, make_store):
        store = await make_store()
        await store.set_working_memory(WorkingMemoryScope.USER, "same-id", "user notes")
        await store.set_working_memory(WorkingMemoryScope.CONVERSATION, "same-id", "conversation notes")

        user = await store.get_working_memory(WorkingMemoryScope.USER, "same-id")
        conv = await store.get_working_memory("conversation", "same-id")

        assert user.content == "user notes"
        assert conv.content == "conversation notes"


class TestSelectMessages:
    def test_stable_sort_and_limit(self):
        messages = [msg("user", "late", 5), msg("user", "early", 1), msg("user", "also early", 1)]
        assert [m.content for m in select_messages(messages, limit=2)] == ["also early", "late"]

    def test_role_validation(self):
        with pytest.raises(ValueError):
            MemoryMessage(role="robot", content="x")

    def test_naive_timestamps_become_utc(self):
        m = MemoryMessage(role="user", content="x", created_at=datetime(2026, 1, 1))
        assert m.created_at.tzinfo is timezone.utc
