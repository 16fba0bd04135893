"""
Agent descriptor.

An Agent is built once and reused across many operations. Its tool set and
sub-agent list can grow (``add_tool`` / ``add_sub_agent``) but never shrink.
Wiring mistakes are rejected at construction time:

- duplicate tool names in the active set (own tools plus built-ins)
- duplicate sub-agent names
- cycles in the static sub-agent graph (A → B → A)
"""
import inspect
import logging
from typing import Any, Callable, Iterable, Iterator, Sequence

from pydantic import BaseModel

from orrery_engine.config import EngineConfig
from orrery_engine.context import OperationContext
from orrery_engine.delegation import DELEGATE_TOOL_NAME
from orrery_engine.exceptions import ConfigurationError
from orrery_engine.hooks import AgentHooks
from orrery_engine.llm_gateway import ModelBackend
from orrery_engine.reasoning import REASONING_TOOL_NAMES
from orrery_engine.results import AgentResult
from orrery_engine.step_loop import AgentEngine, StopPredicate
from orrery_engine.tool_registry import ToolDefinition, ToolRegistry
from orrery_memory.config import MemoryConfig

logger = logging.getLogger("orrery.agents.base")

WORKING_MEMORY_TOOL_NAMES = ("get_working_memory", "update_working_memory", "clear_working_memory")

Instructions = str | Callable[[OperationContext], Any]


class Agent:
    """
    A named, reusable agent.

    Args:
        name: Globally unique handle, also used as the delegation target name.
        instructions: System instructions, or ``fn(context)`` (sync or async) returning them.
        model: Backend invoked each step.
        purpose: One-line description shown to supervisors (defaults to the instructions).
        tools: Tools the agent may call.
        sub_agents: Agents this one may delegate to via ``delegate_task``.
        max_steps: Step budget; None derives it from the sub-agent count.
        memory: History / working-memory wiring.
        hooks: Lifecycle callbacks.
        output_schema: Pydantic model for structured final answers.
        reasoning: Add the ``think`` / ``analyze`` tools.
        supervisor_guidelines: Extra guideline lines for the supervisor prompt.
        config: Engine configuration (timeouts, budgets, policies).
    """

    def __init__(
        self,
        name: str,
        instructions: Instructions,
        model: ModelBackend,
        *,
        purpose: str | None = None,
        tools: Iterable[ToolDefinition] = (),
        sub_agents: Iterable["Agent"] = (),
        max_steps: int | None = None,
        memory: MemoryConfig | None = None,
        hooks: AgentHooks | None = None,
        output_schema: type[BaseModel] | None = None,
        reasoning: bool = False,
        supervisor_guidelines: Sequence[str] = (),
        config: EngineConfig | None = None,
    ):
        if not name or not name.strip():
            raise ConfigurationError("Agent name is required")
        if max_steps is not None and max_steps < 1:
            raise ConfigurationError(f"max_steps must be >= 1, got {max_steps}")

        self.name = name
        self.instructions = instructions
        self.model = model
        self._purpose = purpose
        self.max_steps = max_steps
        self.memory = memory
        self.hooks = hooks
        self.output_schema = output_schema
        self.reasoning = reasoning
        self.supervisor_guidelines = tuple(supervisor_guidelines)
        self.config = config or EngineConfig()

        self.tools = ToolRegistry(tools, timeout_seconds=self.config.tool_timeout_seconds)
        self._sub_agents: list[Agent] = []
        for sub in sub_agents:
            self._attach(sub)
        self._check_active_tools()

    # ── Description ──────────────────────────────────────────────────────

    @property
    def purpose(self) -> str:
        if self._purpose:
            return self._purpose
        if isinstance(self.instructions, str):
            return self.instructions
        return self.name

    @property
    def sub_agents(self) -> list["Agent"]:
        return list(self._sub_agents)

    def get_sub_agent(self, name: str) -> "Agent | None":
        return next((a for a in self._sub_agents if a.name == name), None)

    async def resolve_instructions(self, context: OperationContext) -> str:
        if isinstance(self.instructions, str):
            return self.instructions
        value = self.instructions(context)
        if inspect.isawaitable(value):
            value = await value
        return str(value)

    # ── Wiring ───────────────────────────────────────────────────────────

    def _builtin_tool_names(self) -> set[str]:
        names: set[str] = set()
        if self._sub_agents:
            names.add(DELEGATE_TOOL_NAME)
        if self.memory is not None and self.memory.working_memory is not None and self.memory.working_memory.enabled:
            names.update(WORKING_MEMORY_TOOL_NAMES)
        if self.reasoning:
            names.update(REASONING_TOOL_NAMES)
        return names

    def _check_active_tools(self) -> None:
        clash = self._builtin_tool_names().intersection(self.tools.names)
        if clash:
            raise ConfigurationError(
                f"Agent {self.name}: tool name(s) {', '.join(sorted(clash))} collide with built-in tools"
            )

    def descendants(self) -> Iterator["Agent"]:
        """Every agent reachable through sub-agent links (each once)."""
        seen: set[int] = set()
        stack = list(self._sub_agents)
        while stack:
            agent = stack.pop()
            if id(agent) in seen:
                continue
            seen.add(id(agent))
            yield agent
            stack.extend(agent._sub_agents)

    def _attach(self, sub: "Agent") -> None:
        if sub is self or any(a is self for a in sub.descendants()):
            raise ConfigurationError(f"Delegation cycle: {sub.name} can already reach {self.name}")
        if any(a.name == sub.name for a in self._sub_agents):
            raise ConfigurationError(f"Agent {self.name} already has a sub-agent named {sub.name}")
        self._sub_agents.append(sub)

    def add_sub_agent(self, sub: "Agent") -> None:
        """Append a sub-agent (rejects cycles and duplicate names)."""
        self._attach(sub)
        try:
            self._check_active_tools()
        except ConfigurationError:
            self._sub_agents.remove(sub)
            raise
        logger.debug("Agent %s can now delegate to %s", self.name, sub.name)

    def add_tool(self, tool: ToolDefinition) -> None:
        """Append a tool (rejects duplicates and collisions with built-ins)."""
        if tool.name in self._builtin_tool_names():
            raise ConfigurationError(f"Agent {self.name}: tool name {tool.name} collides with a built-in tool")
        self.tools.register(tool)

    # ── Running ──────────────────────────────────────────────────────────

    async def run(
        self,
        input: str | list[dict[str, Any]],
        context: OperationContext | None = None,
        *,
        max_steps: int | None = None,
        stop_when: StopPredicate | None = None,
        output_schema: type[BaseModel] | None = None,
        propagate_max_steps: bool = False,
    ) -> AgentResult:
        """Start (or join) an operation; see ``AgentEngine.run``."""
        engine = AgentEngine(self, self.config)
        return await engine.run(
            input,
            context,
            max_steps=max_steps,
            stop_when=stop_when,
            output_schema=output_schema,
            propagate_max_steps=propagate_max_steps,
        )

    def __repr__(self) -> str:
        return (
            f"Agent(name={self.name!r}, tools={len(self.tools)}, "
            f"sub_agents={[a.name for a in self._sub_agents]})"
        )
