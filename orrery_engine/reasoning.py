"""
Reasoning toolkit — ``think`` and ``analyze`` scratchpad tools.

Each call records a ReasoningStep under ``context.attributes["reasoning_steps"]``
so hooks and callers can inspect the model's reasoning trail after the run.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from orrery_engine.context import OperationContext
from orrery_engine.tool_registry import ToolDefinition

logger = logging.getLogger("orrery.engine.reasoning")

REASONING_KEY = "reasoning_steps"
REASONING_TOOL_NAMES = ("think", "analyze")

_append_lock = threading.Lock()


class NextAction(str, Enum):
    CONTINUE = "continue"
    VALIDATE = "validate"
    FINAL_ANSWER = "final_answer"


class ReasoningStep(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    title: str
    reasoning: str
    action: str | None = None
    result: str | None = None
    next_action: NextAction | None = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    agent_name: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _record(context: OperationContext, step: ReasoningStep) -> None:
    with _append_lock:
        steps = list(context.attributes.get(REASONING_KEY, []))
        steps.append(step)
        context.attributes[REASONING_KEY] = steps


def reasoning_steps(context: OperationContext) -> list[ReasoningStep]:
    return list(context.attributes.get(REASONING_KEY, []))


CONFIDENCE = {
    "type": "number",
    "minimum": 0,
    "maximum": 1,
    "description": "How confident you are (0.0 to 1.0)",
}


def reasoning_tools(agent_name: str | None = None) -> list[ToolDefinition]:
    """think/analyze tools bound to ``agent_name`` for attribution."""

    async def think(args: dict[str, Any], context: OperationContext) -> str:
        step = ReasoningStep(
            type="thought",
            title=args["title"],
            reasoning=args["thought"],
            action=args.get("action"),
            confidence=args.get("confidence", 0.8),
            agent_name=agent_name,
        )
        _record(context, step)
        return f'Thought step "{step.title}" recorded successfully.'

    async def analyze(args: dict[str, Any], context: OperationContext) -> str:
        step = ReasoningStep(
            type="analysis",
            title=args["title"],
            reasoning=args["analysis"],
            result=args["result"],
            next_action=NextAction(args["next_action"]),
            confidence=args.get("confidence", 0.8),
            agent_name=agent_name,
        )
        _record(context, step)
        return f'Analysis step "{step.title}" recorded successfully. Next action: {step.next_action.value}.'

    return [
        ToolDefinition(
            name="think",
            description=(
                "Use this tool as a scratchpad to reason about the task step-by-step. "
                "Use it BEFORE making other tool calls or generating the final response."
            ),
            handler=think,
            parameters={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "A concise title for this thinking step"},
                    "thought": {"type": "string", "description": "Your detailed reasoning for this step"},
                    "action": {"type": "string", "description": "What you plan to do next"},
                    "confidence": CONFIDENCE,
                },
                "required": ["title", "thought"],
            },
        ),
        ToolDefinition(
            name="analyze",
            description=(
                "Analyze the result of a previous reasoning step or tool call and decide the next action."
            ),
            handler=analyze,
            parameters={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "A concise title for this analysis step"},
                    "result": {"type": "string", "description": "The outcome being analyzed"},
                    "analysis": {"type": "string", "description": "Your analysis of the result"},
                    "next_action": {"type": "string", "enum": [a.value for a in NextAction]},
                    "confidence": CONFIDENCE,
                },
                "required": ["title", "result", "analysis", "next_action"],
            },
        ),
    ]
