"""Step-loop outcome types."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orrery_engine.context import StepRecord
from orrery_engine.tool_registry import ToolResult


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({LoopState.COMPLETED, LoopState.FAILED, LoopState.ABORTED})


class FinishReason(str, Enum):
    STOP = "stop"                       # model produced a final answer
    STEP_BUDGET = "step_budget"         # budget reached while tools were still requested
    STOP_PREDICATE = "stop_predicate"   # caller's stop_when returned True


@dataclass
class AgentResult:
    """What one agent invocation returns to its caller."""
    agent_name: str
    operation_id: str
    text: str = ""
    object: Any = None
    finish_reason: FinishReason = FinishReason.STOP
    steps: list[StepRecord] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list, repr=False)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_partial(self) -> bool:
        return self.finish_reason != FinishReason.STOP

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "operation_id": self.operation_id,
            "text": self.text,
            "object": self.object,
            "finish_reason": self.finish_reason.value,
            "steps": self.step_count,
            "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
        }
