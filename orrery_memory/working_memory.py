"""
Working memory — a small scoped scratchpad injected into the system prompt.

Exactly one mode is active per configuration:
    free_text  anything the model wants to keep
    template   a markdown template the model keeps filled in
    schema     JSON validated against a pydantic model

Scope is either the conversation (keyed by ``context.conversation_id``) or
the user (keyed by ``context.user_id``). Invalid schema-mode writes raise
WorkingMemoryValidationError and leave the stored value untouched.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from orrery_engine.context import OperationContext
from orrery_engine.exceptions import (
    ConfigurationError,
    WorkingMemoryDisabledError,
    WorkingMemoryValidationError,
)
from orrery_engine.tool_registry import ToolDefinition
from orrery_memory.models import WorkingMemoryRecord, WorkingMemoryScope
from orrery_memory.store import MemoryStore

logger = logging.getLogger("orrery.memory.working")


class WorkingMemoryMode(str, Enum):
    FREE_TEXT = "free_text"
    TEMPLATE = "template"
    SCHEMA = "schema"


@dataclass
class WorkingMemoryConfig:
    enabled: bool = True
    scope: WorkingMemoryScope = WorkingMemoryScope.CONVERSATION
    template: str | None = None
    schema: type[BaseModel] | None = None

    def __post_init__(self):
        self.scope = WorkingMemoryScope(self.scope)
        if self.template is not None and self.schema is not None:
            raise ConfigurationError("Working memory takes either a template or a schema, not both")

    @property
    def mode(self) -> WorkingMemoryMode:
        if self.schema is not None:
            return WorkingMemoryMode.SCHEMA
        if self.template is not None:
            return WorkingMemoryMode.TEMPLATE
        return WorkingMemoryMode.FREE_TEXT


class WorkingMemoryManager:
    """Reads, validates and writes the working-memory record for one agent."""

    def __init__(self, store: MemoryStore, config: WorkingMemoryConfig | None = None):
        self.store = store
        self.config = config or WorkingMemoryConfig()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def mode(self) -> WorkingMemoryMode:
        return self.config.mode

    def _require_enabled(self) -> None:
        if not self.config.enabled:
            raise WorkingMemoryDisabledError("Working memory is not enabled")

    def scope_id(self, context: OperationContext) -> str | None:
        if self.config.scope == WorkingMemoryScope.USER:
            return context.user_id
        return context.conversation_id

    def _require_scope_id(self, context: OperationContext) -> str:
        scope_id = self.scope_id(context)
        if not scope_id:
            field_name = "user_id" if self.config.scope == WorkingMemoryScope.USER else "conversation_id"
            raise WorkingMemoryValidationError(
                f"Working memory is {self.config.scope.value}-scoped but the operation has no {field_name}"
            )
        return scope_id

    # ── Read / write ─────────────────────────────────────────────────────

    async def get(self, context: OperationContext) -> str | None:
        self._require_enabled()
        scope_id = self.scope_id(context)
        if not scope_id:
            return None
        record = await self.store.get_working_memory(self.config.scope, scope_id)
        return record.content if record else None

    def validate(self, content: str | dict[str, Any]) -> str:
        """Return the string to store, or raise WorkingMemoryValidationError."""
        if self.mode != WorkingMemoryMode.SCHEMA:
            if not isinstance(content, str):
                raise WorkingMemoryValidationError("Working memory content must be a string")
            return content

        schema = self.config.schema
        try:
            if isinstance(content, str):
                schema.model_validate_json(content)
                return content
            schema.model_validate(content)
            return json.dumps(content)
        except ValidationError as e:
            raise WorkingMemoryValidationError(f"Invalid working memory format: {e}") from e

    async def update(
        self,
        context: OperationContext,
        content: str | dict[str, Any],
        merge: bool = False,
    ) -> WorkingMemoryRecord:
        """
        Overwrite the record for the active scope.

        With ``merge=True`` in schema mode, top-level keys of ``content`` are
        merged into the stored object before validation.
        """
        self._require_enabled()
        scope_id = self._require_scope_id(context)

        if merge and self.mode == WorkingMemoryMode.SCHEMA:
            content = await self._merged(scope_id, content)

        payload = self.validate(content)
        record = await self.store.set_working_memory(self.config.scope, scope_id, payload)
        logger.debug("Working memory updated (%s=%s, %d chars)", self.config.scope.value, scope_id, len(payload))
        return record

    async def _merged(self, scope_id: str, content: str | dict[str, Any]) -> dict[str, Any]:
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                raise WorkingMemoryValidationError(f"Invalid working memory format: {e.msg}") from e
        if not isinstance(content, dict):
            raise WorkingMemoryValidationError("Invalid working memory format: expected a JSON object")
        existing = await self.store.get_working_memory(self.config.scope, scope_id)
        base: dict[str, Any] = {}
        if existing is not None:
            try:
                base = json.loads(existing.content)
            except json.JSONDecodeError:
                logger.warning("Stored working memory for %s is not JSON; replacing", scope_id)
        return {**base, **content}

    async def clear(self, context: OperationContext) -> bool:
        self._require_enabled()
        scope_id = self._require_scope_id(context)
        return await self.store.clear_working_memory(self.config.scope, scope_id)

    # ── Prompt ───────────────────────────────────────────────────────────

    def _format_description(self) -> str:
        if self.mode == WorkingMemoryMode.SCHEMA:
            schema = json.dumps(self.config.schema.model_json_schema(), indent=2)
            return f"Working memory is a JSON object matching this schema:\n{schema}"
        if self.mode == WorkingMemoryMode.TEMPLATE:
            return f"Working memory follows this markdown template:\n{self.config.template}"
        return "Working memory is free-form text."

    async def instructions(self, context: OperationContext) -> str:
        """System-prompt section describing and showing the current record."""
        current = await self.get(context)
        if current is None and self.mode == WorkingMemoryMode.TEMPLATE:
            current = self.config.template
        lines = [
            "<working_memory>",
            f"You keep a {self.config.scope.value}-scoped working memory for facts worth remembering "
            "across turns (preferences, goals, open tasks).",
            self._format_description(),
            "Use update_working_memory when you learn something that belongs there, "
            "get_working_memory to re-read it and clear_working_memory to reset it.",
            "Current working memory:",
            current if current else "(empty)",
            "</working_memory>",
        ]
        return "\n".join(lines)

    # ── Tools ────────────────────────────────────────────────────────────

    def tools(self) -> list[ToolDefinition]:
        if self.mode == WorkingMemoryMode.SCHEMA:
            content_schema: dict[str, Any] = {
                "description": "Working memory as a JSON object (or its JSON string)",
                "type": ["object", "string"],
            }
        else:
            content_schema = {"type": "string", "description": "The complete new working memory"}

        async def get_working_memory(args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
            return {"content": await self.get(context)}

        async def update_working_memory(args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
            record = await self.update(context, args["content"], merge=args.get("merge", False))
            return {"success": True, "scope": record.scope.value, "updated_at": record.updated_at.isoformat()}

        async def clear_working_memory(args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
            return {"success": await self.clear(context)}

        update_props: dict[str, Any] = {"content": content_schema}
        if self.mode == WorkingMemoryMode.SCHEMA:
            update_props["merge"] = {
                "type": "boolean",
                "description": "Merge top-level keys into the existing object instead of replacing it",
            }

        return [
            ToolDefinition(
                name="get_working_memory",
                description="Read the current working memory.",
                handler=get_working_memory,
            ),
            ToolDefinition(
                name="update_working_memory",
                description="Replace the working memory. " + self._format_description(),
                handler=update_working_memory,
                parameters={
                    "type": "object",
                    "properties": update_props,
                    "required": ["content"],
                    "additionalProperties": False,
                },
            ),
            ToolDefinition(
                name="clear_working_memory",
                description="Erase the working memory.",
                handler=clear_working_memory,
            ),
        ]
