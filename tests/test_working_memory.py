"""Tests for working memory (free text, template and schema modes)."""
import json

import pytest
from pydantic import BaseModel

from orrery_agents import Agent
from orrery_engine.context import OperationContext
from orrery_engine.exceptions import (
    ConfigurationError,
    WorkingMemoryDisabledError,
    WorkingMemoryValidationError,
)
from orrery_engine.tool_registry import ToolDefinition
from orrery_memory import (
    InMemoryMemoryStore,
    MemoryConfig,
    WorkingMemoryConfig,
    WorkingMemoryManager,
    WorkingMemoryMode,
    WorkingMemoryScope,
)
from tests.conftest import ScriptedBackend, call, reply, tool_messages

pytestmark = pytest.mark.unit


class Profile(BaseModel):
    name: str
    timezone: str | None = None


def conversation() -> OperationContext:
    return OperationContext(user_id="u1", conversation_id="c1")


# ── Manager ───────────────────────────────────────────────────────────────────

class TestWorkingMemoryManager:
    def test_template_and_schema_are_exclusive(self):
        with pytest.raises(ConfigurationError):
            WorkingMemoryConfig(template="# Notes", schema=Profile)

    def test_mode_detection(self):
        assert WorkingMemoryConfig().mode == WorkingMemoryMode.FREE_TEXT
        assert WorkingMemoryConfig(template="# Notes").mode == WorkingMemoryMode.TEMPLATE
        assert WorkingMemoryConfig(schema=Profile).mode == WorkingMemoryMode.SCHEMA

    @pytest.mark.asyncio
    async def test_free_text_round_trip_is_byte_identical(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore())
        ctx = conversation()
        payload = "  Likes tea.\n\tPrefers metric units ✓\n"

        await manager.update(ctx, payload)

        assert await manager.get(ctx) == payload

    @pytest.mark.asyncio
    async def test_schema_string_round_trip_is_byte_identical(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(schema=Profile))
        ctx = conversation()
        payload = '{"name":  "Ada",   "timezone": "UTC"}'

        await manager.update(ctx, payload)

        assert await manager.get(ctx) == payload

    @pytest.mark.asyncio
    async def test_invalid_schema_write_keeps_previous_value(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(schema=Profile))
        ctx = conversation()
        await manager.update(ctx, {"name": "Ada"})

        with pytest.raises(WorkingMemoryValidationError, match="Invalid working memory format"):
            await manager.update(ctx, {"timezone": "UTC"})

        assert json.loads(await manager.get(ctx)) == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_schema_merge_keeps_existing_keys(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(schema=Profile))
        ctx = conversation()
        await manager.update(ctx, {"name": "Ada"})

        await manager.update(ctx, {"timezone": "Europe/London"}, merge=True)

        assert json.loads(await manager.get(ctx)) == {"name": "Ada", "timezone": "Europe/London"}

    @pytest.mark.asyncio
    async def test_free_text_rejects_non_strings(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore())
        with pytest.raises(WorkingMemoryValidationError):
            await manager.update(conversation(), {"not": "text"})

    @pytest.mark.asyncio
    async def test_disabled_working_memory_raises(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(enabled=False))
        with pytest.raises(WorkingMemoryDisabledError, match="Working memory is not enabled"):
            await manager.get(conversation())
        with pytest.raises(WorkingMemoryDisabledError):
            await manager.update(conversation(), "x")

    @pytest.mark.asyncio
    async def test_user_scope_is_shared_across_conversations(self):
        store = InMemoryMemoryStore()
        manager = WorkingMemoryManager(store, WorkingMemoryConfig(scope=WorkingMemoryScope.USER))

        await manager.update(OperationContext(user_id="u1", conversation_id="c1"), "likes tea")

        assert await manager.get(OperationContext(user_id="u1", conversation_id="c2")) == "likes tea"
        assert await manager.get(OperationContext(user_id="u2", conversation_id="c1")) is None

    @pytest.mark.asyncio
    async def test_conversation_scope_is_isolated(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore())
        await manager.update(OperationContext(conversation_id="c1"), "c1 notes")
        assert await manager.get(OperationContext(conversation_id="c2")) is None

    @pytest.mark.asyncio
    async def test_missing_scope_key_rejects_writes(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(scope=WorkingMemoryScope.USER))
        with pytest.raises(WorkingMemoryValidationError, match="no user_id"):
            await manager.update(OperationContext(conversation_id="c1"), "x")

    @pytest.mark.asyncio
    async def test_clear(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore())
        ctx = conversation()
        await manager.update(ctx, "notes")
        assert await manager.clear(ctx) is True
        assert await manager.get(ctx) is None
        assert await manager.clear(ctx) is False

    @pytest.mark.asyncio
    async def test_template_shown_until_first_write(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(template="# User\n- Name:"))
        ctx = conversation()

        section = await manager.instructions(ctx)
        assert section.startswith("<working_memory>")
        assert section.endswith("</working_memory>")
        assert "# User\n- Name:" in section

        await manager.update(ctx, "# User\n- Name: Ada")
        assert "- Name: Ada" in await manager.instructions(ctx)

    def test_schema_mode_tool_accepts_object_or_string(self):
        manager = WorkingMemoryManager(InMemoryMemoryStore(), WorkingMemoryConfig(schema=Profile))
        update = next(t for t in manager.tools() if t.name == "update_working_memory")
        assert update.parameters["properties"]["content"]["type"] == ["object", "string"]
        assert "merge" in update.parameters["properties"]


# ── Through the step loop ─────────────────────────────────────────────────────

class TestWorkingMemoryTools:
    @pytest.mark.asyncio
    async def test_agent_updates_and_sees_working_memory(self, config):
        store = InMemoryMemoryStore()
        backend = ScriptedBackend(
            call("update_working_memory", {"content": "User is called Ada"}),
            reply("Noted."),
            reply("Hi Ada."),
        )
        memory = MemoryConfig(store=store, working_memory=WorkingMemoryConfig())
        agent = Agent("assistant", "Help.", backend, memory=memory, config=config)

        await agent.run("I'm Ada", conversation())
        await agent.run("Hello again", conversation())

        assert json.loads(tool_messages(backend.invocations[1])[0]["content"])["success"] is True
        assert "User is called Ada" in backend.system_prompt(2)
        names = [t["function"]["name"] for t in backend.tool_schemas[0]]
        assert names == ["get_working_memory", "update_working_memory", "clear_working_memory"]

    @pytest.mark.asyncio
    async def test_invalid_update_is_reported_not_fatal(self, config):
        store = InMemoryMemoryStore()
        backend = ScriptedBackend(
            call("update_working_memory", {"content": {"timezone": "UTC"}}),
            reply("I could not save that."),
        )
        memory = MemoryConfig(store=store, working_memory=WorkingMemoryConfig(schema=Profile))
        agent = Agent("assistant", "Help.", backend, memory=memory, config=config)
        ctx = conversation()
        await WorkingMemoryManager(store, memory.working_memory).update(ctx, {"name": "Ada"})

        result = await agent.run("save my timezone", ctx)

        assert result.text == "I could not save that."
        body = json.loads(tool_messages(backend.invocations[1])[0]["content"])
        assert body["type"] == "validation"
        assert body["error"].startswith("Invalid working memory format")
        record = await store.get_working_memory(WorkingMemoryScope.CONVERSATION, "c1")
        assert json.loads(record.content) == {"name": "Ada"}

    def test_custom_tool_cannot_shadow_working_memory_tools(self, config):
        async def fake(args, context):
            return None

        memory = MemoryConfig(store=InMemoryMemoryStore(), working_memory=WorkingMemoryConfig())
        with pytest.raises(ConfigurationError, match="collide"):
            Agent("a", "x", ScriptedBackend(), memory=memory,
                  tools=[ToolDefinition("get_working_memory", "x", fake)], config=config)
