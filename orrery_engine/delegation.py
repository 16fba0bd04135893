"""
Delegation protocol — the built-in ``delegate_task`` tool.

A supervisor hands a task to one or more of its sub-agents. Each target runs
its own step loop on a child view of the supervisor's OperationContext, so
cancellation, attributes and the step log are shared across the tree, while
the message list starts fresh from the task description.

Result shape returned to the supervisor's model (one entry per target, in
target order):

    [{"agentName": "writer", "response": "...", "status": "ok"},
     {"agentName": "critic", "response": "Error in delegating task to critic: ...",
      "status": "error", "error": "..."}]

A failing sub-agent becomes a ``status: "error"`` entry; only cancellation
and the supervisor's own hook failures escape the tool.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from pydantic import BaseModel

from orrery_engine.config import EngineConfig
from orrery_engine.context import OperationContext, StepRecord
from orrery_engine.exceptions import DelegationError, OperationCancelled, primary_error
from orrery_engine.hooks import HookRunner
from orrery_engine.metrics import METRICS
from orrery_engine.tool_registry import ToolDefinition

if TYPE_CHECKING:
    from orrery_agents.base import Agent
    from orrery_engine.results import AgentResult

logger = logging.getLogger("orrery.engine.delegation")

DELEGATE_TOOL_NAME = "delegate_task"

DEFAULT_GUIDELINES = (
    "Provide a final answer to the User when you have a response from all agents.",
    "Do not mention the name of any agent in your response.",
    "Contact MULTIPLE agents at the same time whenever their sub-tasks are independent.",
    "Keep your communications with other agents concise and terse, do not engage in any chit-chat.",
    "Agents are not aware of each other's existence. You are the sole intermediary between the agents.",
    "Provide full context and details when necessary, as some agents will not have the full conversation history.",
    "Only communicate with the agents that are necessary to help with the User's query.",
    "If an agent asks for a confirmation, forward it to the user as is.",
    "If the User asks a question you already answered from <agents_memory>, reuse that response.",
    "Do not summarize the agent's response when giving a final answer to the User.",
    "Never assume parameter values while invoking a function; use only values provided by the user or your instructions.",
)

RunAgent = Callable[..., Awaitable["AgentResult"]]


def supervisor_system_message(
    instructions: str,
    sub_agents: Sequence["Agent"],
    agents_memory: str = "",
    custom_guidelines: Sequence[str] = (),
    include_agents_memory: bool = True,
) -> str:
    """System prompt for an agent that coordinates sub-agents."""
    if not sub_agents:
        return instructions

    agent_list = "\n".join(f"- {a.name}: {a.purpose}" for a in sub_agents)
    guidelines = "\n".join(f"- {g}" for g in (*DEFAULT_GUIDELINES, *custom_guidelines))
    message = (
        "You are a supervisor agent that coordinates between specialized agents:\n\n"
        f"<specialized_agents>\n{agent_list}\n</specialized_agents>\n\n"
        f"<instructions>\n{instructions}\n</instructions>\n\n"
        f"<guidelines>\n{guidelines}\n</guidelines>"
    )
    if include_agents_memory:
        memory = agents_memory or "No previous agent interactions available."
        message += f"\n<agents_memory>\n{memory}\n</agents_memory>"
    return message


def format_agents_memory(delegations: Sequence[dict[str, Any]]) -> str:
    """Render earlier delegation results (newest last) for <agents_memory>."""
    lines = []
    for d in delegations:
        status = "" if d.get("status", "ok") == "ok" else f" [{d['status']}]"
        lines.append(f"{d.get('agentName', '?')}{status}: {d.get('response', '')}")
    return "\n".join(lines)


@dataclass
class DelegationResult:
    agent_name: str
    response: str
    status: str = "ok"
    error: str | None = None
    finish_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "agentName": self.agent_name,
            "response": self.response,
            "status": self.status,
        }
        if self.error is not None:
            entry["error"] = self.error
        return entry


def _response_text(result: "AgentResult") -> str:
    if result.object is not None:
        if isinstance(result.object, BaseModel):
            return result.object.model_dump_json()
        return json.dumps(result.object, default=str)
    return result.text


class DelegationProtocol:
    """
    Runs delegated sub-tasks for one supervisor invocation.

    Args:
        supervisor: The delegating agent.
        run_agent: ``await run_agent(agent, task, context, max_steps=..., extra_instructions=...)``
        hooks: The supervisor's hook runner (for on_handoff).
        current_step: Returns the supervisor's in-flight StepRecord.
        supervisor_memory: Returns recent supervisor messages to share with targets.
        max_steps: Budget forced on sub-agents; None lets each resolve its own.
    """

    def __init__(
        self,
        supervisor: "Agent",
        run_agent: RunAgent,
        hooks: HookRunner,
        config: EngineConfig | None = None,
        current_step: Callable[[], StepRecord | None] | None = None,
        supervisor_memory: Callable[[], list[dict[str, Any]]] | None = None,
        max_steps: int | None = None,
    ):
        self.supervisor = supervisor
        self.config = config or EngineConfig()
        self._run_agent = run_agent
        self._hooks = hooks
        self._current_step = current_step or (lambda: None)
        self._supervisor_memory = supervisor_memory
        self.max_steps = max_steps

    # ── Validation ───────────────────────────────────────────────────────

    def resolve_targets(self, names: Sequence[str]) -> list["Agent"]:
        """Map names to sub-agents; any unknown name rejects the whole call."""
        available = {a.name: a for a in self.supervisor.sub_agents}
        if not names:
            raise DelegationError("At least one target agent must be specified")
        unknown = [n for n in names if n not in available]
        if unknown:
            raise DelegationError(
                f"Unknown target agent(s): {', '.join(unknown)}. "
                f"Available agents: {', '.join(available) or 'none'}"
            )
        seen: dict[str, "Agent"] = {}
        for n in names:
            seen.setdefault(n, available[n])
        return list(seen.values())

    # ── Task construction ────────────────────────────────────────────────

    def build_task_message(self, task: str, target: "Agent", extra: dict[str, Any] | None) -> str:
        if not extra:
            return task
        return (
            f"Task handed off from {self.supervisor.name} to {target.name}:\n"
            f"{task}\n\nContext: {json.dumps(extra, indent=2, default=str)}"
        )

    def _memory_block(self) -> str | None:
        if not self.config.include_supervisor_memory or self._supervisor_memory is None:
            return None
        recent = self._supervisor_memory()[-self.config.supervisor_memory_messages:]
        if not recent:
            return None
        lines = [f"{m['role']}: {m['content']}" for m in recent]
        return (
            f"<supervisor_memory>\nRecent conversation of {self.supervisor.name}, "
            "for background only:\n" + "\n".join(lines) + "\n</supervisor_memory>"
        )

    # ── Execution ────────────────────────────────────────────────────────

    async def delegate(
        self,
        task: str,
        target_names: Sequence[str],
        context: OperationContext,
        extra: dict[str, Any] | None = None,
    ) -> list[DelegationResult]:
        if not task or not task.strip():
            raise DelegationError("Task cannot be empty")
        targets = self.resolve_targets(target_names)
        if context.depth + 1 > self.config.max_delegation_depth:
            raise DelegationError(
                f"Delegation depth limit reached ({self.config.max_delegation_depth}); "
                "answer with the information you have"
            )

        step = self._current_step()
        step_ref = step.step_id if step else None
        memory_block = self._memory_block()

        logger.info(
            "%s delegating to %s (depth=%d)",
            self.supervisor.name, ", ".join(t.name for t in targets), context.depth + 1,
        )

        if len(targets) == 1:
            return [await self._run_one(targets[0], task, extra, context, step_ref, memory_block)]

        # sub-agent failures come back as error entries; anything that escapes
        # _run_one (cancellation, the supervisor's own hooks) stops every sibling
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(self._run_one(t, task, extra, context, step_ref, memory_block))
                    for t in targets
                ]
        except BaseExceptionGroup as group:
            raise primary_error(group) from None
        return [t.result() for t in tasks]

    async def _run_one(
        self,
        target: "Agent",
        task: str,
        extra: dict[str, Any] | None,
        context: OperationContext,
        step_ref: str | None,
        memory_block: str | None,
    ) -> DelegationResult:
        context.cancellation.raise_if_cancelled()
        await self._hooks.call("on_handoff", context, self.supervisor, target)

        child = context.child(
            parent_agent_id=self.supervisor.name,
            parent_step_ref=step_ref,
            conversation_id=f"{context.conversation_id}:{target.name}" if context.conversation_id else None,
        )
        message = self.build_task_message(task, target, extra)
        try:
            result = await self._run_agent(
                target,
                message,
                child,
                max_steps=self.max_steps,
                extra_instructions=[memory_block] if memory_block else None,
            )
        except OperationCancelled:
            METRICS.delegations_total.labels(source=self.supervisor.name, target=target.name, status="aborted").inc()
            raise
        except Exception as e:
            logger.warning("Sub-agent %s failed: %s", target.name, e)
            METRICS.delegations_total.labels(source=self.supervisor.name, target=target.name, status="error").inc()
            return DelegationResult(
                agent_name=target.name,
                response=f"Error in delegating task to {target.name}: {e}",
                status="error",
                error=str(e),
            )

        METRICS.delegations_total.labels(source=self.supervisor.name, target=target.name, status="ok").inc()
        return DelegationResult(
            agent_name=target.name,
            response=_response_text(result),
            finish_reason=result.finish_reason.value,
        )

    # ── Tool ─────────────────────────────────────────────────────────────

    def tool(self) -> ToolDefinition:
        async def delegate_task(args: dict[str, Any], context: OperationContext) -> list[dict[str, Any]]:
            results = await self.delegate(
                args["task"],
                args["targetAgents"],
                context,
                extra=args.get("context"),
            )
            return [r.to_dict() for r in results]

        names = [a.name for a in self.supervisor.sub_agents]
        return ToolDefinition(
            name=DELEGATE_TOOL_NAME,
            description="Delegate a task to one or more specialized agents",
            handler=delegate_task,
            parameters={
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "The task to delegate"},
                    "targetAgents": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": f"Names of the agents to delegate to (one or more of: {', '.join(names)})",
                    },
                    "context": {
                        "type": "object",
                        "description": "Additional context for the task",
                    },
                },
                "required": ["task", "targetAgents"],
            },
        )
