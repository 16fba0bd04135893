"""
Tool Registry — named tool definitions visible to one agent operation.

Handles:
- Name → definition dispatch (duplicate names are a configuration error)
- JSON Schema validation of arguments before the handler runs
- Sync handlers in the default executor, async handlers awaited directly
- Timeout enforcement and per-call error isolation
- Result formatting for LLM consumption

A handler has the signature ``handler(args: dict, context: OperationContext)``
and may return any JSON-serialisable value, a pydantic model, or an object
with ``to_dict()``. Raising turns into an error-shaped result, except
``OperationCancelled`` and ``HookError``, which always propagate.
"""
import asyncio
import functools
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel

from orrery_engine.context import OperationContext
from orrery_engine.exceptions import (
    ConfigurationError,
    HookError,
    OperationCancelled,
    ToolValidationError,
)
from orrery_engine.metrics import METRICS
from orrery_engine.tracing import get_tracer, traced

logger = logging.getLogger("orrery.engine.tools")
tracer = get_tracer("orrery.engine.tools")

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class ToolDefinition:
    """A tool that can be called by the model."""
    name: str
    description: str
    handler: Callable[..., Any] = field(repr=False)
    parameters: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Tool name is required")
        if not callable(self.handler):
            raise ConfigurationError(f"Tool {self.name} has no callable handler")
        try:
            Draft202012Validator.check_schema(self.parameters)
        except SchemaError as e:
            raise ConfigurationError(f"Tool {self.name} has an invalid parameter schema: {e.message}") from e
        self._validator = Draft202012Validator(self.parameters)

    def to_llm_schema(self) -> dict[str, Any]:
        """OpenAI function-calling format (what litellm expects in ``tools``)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate(self, args: dict[str, Any]) -> None:
        errors = sorted(self._validator.iter_errors(args), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(
                f"{'/'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            )
            raise ToolValidationError(f"Invalid arguments for {self.name}: {details}")


def tool(
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, Any] | None = None,
) -> Callable[[Callable[..., Any]], ToolDefinition]:
    """
    Decorator turning ``fn(args, context)`` into a ToolDefinition.

    The description defaults to the function's docstring.
    """
    def wrap(fn: Callable[..., Any]) -> ToolDefinition:
        return ToolDefinition(
            name=name or fn.__name__,
            description=description or inspect.getdoc(fn) or "",
            handler=fn,
            parameters=parameters or dict(EMPTY_PARAMETERS),
        )
    return wrap


@dataclass
class ToolResult:
    """Result of a tool execution."""
    tool_call_id: str
    name: str
    content: str
    success: bool = True
    duration_ms: int = 0
    data: Any = None
    error: str | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "success": self.success,
            "content": self.content,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def format_tool_output(result: Any) -> str:
    """Stringify a handler return value for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    if hasattr(result, "to_dict"):
        return json.dumps(result.to_dict(), default=str)
    if isinstance(result, (dict, list, tuple, int, float, bool)) or result is None:
        return json.dumps(result, default=str)
    return str(result)


class ToolRegistry:
    """
    The active tool set for an agent.

    Usage:
        registry = ToolRegistry([search_tool, calc_tool])

        # Tool definitions for the model:
        tools = registry.get_tools_for_llm()

        # Execute a tool call:
        result = await registry.execute(tool_call_id, name, arguments, context)
    """

    def __init__(self, tools: Iterable[ToolDefinition] = (), timeout_seconds: float = 300.0):
        self._tools: dict[str, ToolDefinition] = {}
        self._timeout = timeout_seconds
        for t in tools:
            self.register(t)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise ConfigurationError(f"Duplicate tool name: {definition.name}")
        self._tools[definition.name] = definition

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: Callable[..., Any],
    ) -> ToolDefinition:
        """Manually register a tool."""
        definition = ToolDefinition(name=name, description=description, handler=handler, parameters=parameters)
        self.register(definition)
        return definition

    def extended(self, tools: Iterable[ToolDefinition]) -> "ToolRegistry":
        """New registry with this registry's tools plus ``tools``."""
        registry = ToolRegistry(self._tools.values(), timeout_seconds=self._timeout)
        for t in tools:
            registry.register(t)
        return registry

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        return [t.to_llm_schema() for t in self._tools.values()]

    @staticmethod
    def parse_arguments(tool: ToolDefinition, arguments: str | dict[str, Any] | None) -> dict[str, Any]:
        """Decode and schema-check raw model arguments."""
        if arguments is None or arguments == "":
            args: Any = {}
        elif isinstance(arguments, str):
            try:
                args = json.loads(arguments)
            except json.JSONDecodeError as e:
                raise ToolValidationError(f"Arguments for {tool.name} are not valid JSON: {e.msg}") from e
        else:
            args = arguments
        if not isinstance(args, dict):
            raise ToolValidationError(f"Arguments for {tool.name} must be a JSON object")
        tool.validate(args)
        return args

    def _error(self, tool_call_id: str, name: str, message: str, start: float, kind: str) -> ToolResult:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        METRICS.tool_calls_total.labels(tool=name, success="false").inc()
        return ToolResult(
            tool_call_id=tool_call_id,
            name=name,
            content=json.dumps({"error": message, "status": "error", "type": kind}),
            success=False,
            duration_ms=elapsed_ms,
            error=message,
        )

    async def execute(
        self,
        tool_call_id: str,
        name: str,
        arguments: str | dict[str, Any] | None,
        context: OperationContext,
    ) -> ToolResult:
        """
        Execute a tool call from the model.

        Args:
            tool_call_id: ID from the model's tool call
            name: Tool name
            arguments: JSON string or dict of arguments
            context: The operation this call belongs to

        Returns:
            ToolResult with stringified content; failures are error-shaped.

        Raises:
            OperationCancelled: the operation was cancelled before or during the call.
        """
        context.cancellation.raise_if_cancelled()
        start = time.monotonic()

        definition = self._tools.get(name)
        if definition is None:
            return self._error(
                tool_call_id, name,
                f"Unknown tool: {name}. Available tools: {', '.join(self._tools) or 'none'}",
                start, "validation",
            )

        try:
            args = self.parse_arguments(definition, arguments)
        except ToolValidationError as e:
            logger.info("Rejected call to %s: %s", name, e)
            return self._error(tool_call_id, name, str(e), start, "validation")

        with traced(tracer, "tool.execute", tool=name, operation_id=context.operation_id):
            try:
                if inspect.iscoroutinefunction(definition.handler):
                    work = definition.handler(args, context)
                else:
                    loop = asyncio.get_running_loop()
                    work = loop.run_in_executor(None, functools.partial(definition.handler, args, context))
                result = await context.cancellation.race(
                    asyncio.wait_for(work, timeout=self._timeout)
                )
            except (OperationCancelled, HookError):
                raise
            except asyncio.TimeoutError:
                logger.warning("Tool %s timed out after %ss", name, self._timeout)
                return self._error(tool_call_id, name, f"Tool timed out after {self._timeout}s", start, "timeout")
            except ToolValidationError as e:
                return self._error(tool_call_id, name, str(e), start, "validation")
            except Exception as e:
                logger.error("Tool execution failed: %s — %s", name, e)
                return self._error(tool_call_id, name, str(e), start, "tool")

        elapsed = time.monotonic() - start
        METRICS.tool_calls_total.labels(tool=name, success="true").inc()
        METRICS.tool_duration.labels(tool=name).observe(elapsed)
        return ToolResult(
            tool_call_id=tool_call_id,
            name=name,
            content=format_tool_output(result),
            success=True,
            duration_ms=int(elapsed * 1000),
            data=result,
        )

    def list_tools(self) -> list[dict[str, str]]:
        """List all registered tools (for debugging)."""
        return [{"name": t.name, "description": t.description[:100]} for t in self._tools.values()]
