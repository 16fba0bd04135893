"""
Orrery Test Suite — Shared Fixtures

Model backends are scripted in-process: each test lists the responses the
"model" gives, step by step. No network, no litellm calls.
"""
import asyncio
from typing import Any, Callable

import pytest

from orrery_engine.config import EngineConfig
from orrery_engine.exceptions import ModelBackendError
from orrery_engine.llm_gateway import ModelBackend, ModelResponse, ToolCallRequest


# ── Response helpers ──────────────────────────────────────────────────────────

def reply(text: str) -> ModelResponse:
    return ModelResponse(text=text, finish_reason="stop")


def call(name: str, args: dict[str, Any] | str | None = None, text: str = "", call_id: str | None = None) -> ModelResponse:
    request = ToolCallRequest(name=name, arguments=args if args is not None else {})
    if call_id:
        request.id = call_id
    return ModelResponse(text=text, tool_calls=[request], finish_reason="tool_calls")


def calls(*requests: tuple[str, dict[str, Any]]) -> ModelResponse:
    return ModelResponse(
        tool_calls=[ToolCallRequest(name=n, arguments=a) for n, a in requests],
        finish_reason="tool_calls",
    )


# ── Scripted backends ─────────────────────────────────────────────────────────

class ScriptedBackend(ModelBackend):
    """
    Returns scripted responses in order.

    Script items may be a ModelResponse, an exception instance (raised), or a
    callable ``fn(messages) -> ModelResponse`` for responses that depend on
    what the model was sent. When the script runs out, ``default`` repeats.
    """

    def __init__(self, *script: Any, default: Any = None, name: str = "scripted"):
        self.script = list(script)
        self.default = default
        self.name = name
        self.invocations: list[list[dict[str, Any]]] = []
        self.tool_schemas: list[list[dict[str, Any]] | None] = []

    @property
    def call_count(self) -> int:
        return len(self.invocations)

    async def invoke(self, messages, tools=None, *, cancellation=None, output_schema=None) -> ModelResponse:
        self.invocations.append([dict(m) for m in messages])
        self.tool_schemas.append(tools)
        await asyncio.sleep(0)
        item = self.script.pop(0) if self.script else self.default
        if item is None:
            raise AssertionError(f"{self.name}: script exhausted after {self.call_count - 1} calls")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(messages)
        return item

    def system_prompt(self, invocation: int = 0) -> str:
        return self.invocations[invocation][0]["content"]


class BlockingBackend(ModelBackend):
    """Never answers until cancelled; records whether it was abandoned."""

    name = "blocking"

    def __init__(self):
        self.started = asyncio.Event()
        self.abandoned = False
        self.call_count = 0

    async def invoke(self, messages, tools=None, *, cancellation=None, output_schema=None) -> ModelResponse:
        self.call_count += 1
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.abandoned = True
            raise
        raise ModelBackendError("unreachable")


def tool_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [m for m in messages if m.get("role") == "tool"]


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(tool_timeout_seconds=5, llm_timeout_seconds=5)


@pytest.fixture
def make_backend() -> Callable[..., ScriptedBackend]:
    return ScriptedBackend
