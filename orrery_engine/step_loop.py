"""
Step loop — drives one agent's part of an operation to completion.

State machine::

    IDLE → RUNNING → COMPLETED | FAILED | ABORTED

Each step is one model round-trip. When the model asks for tools, every
requested call runs (concurrently when there are several), results are fed
back as ``tool`` messages and the loop continues, until the model answers,
the step budget runs out, or the caller's ``stop_when`` predicate fires. The
last two end in COMPLETED with the best partial output rather than raising.

Cancellation is observed before every model call, before every tool call and
before the final memory write; in-flight model calls and tools are abandoned
as soon as the shared signal fires.

Budget resolution (first match wins):
    1. ``max_steps`` passed to ``run()``
    2. ``agent.max_steps``
    3. ``steps_per_sub_agent × len(sub_agents)`` for supervisors
    4. ``default_step_budget``
"""
import asyncio
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel

from orrery_engine.config import EngineConfig
from orrery_engine.context import OperationContext, StepRecord, StepStatus
from orrery_engine.delegation import (
    DELEGATE_TOOL_NAME,
    DelegationProtocol,
    format_agents_memory,
    supervisor_system_message,
)
from orrery_engine.exceptions import (
    EngineError,
    HookError,
    ModelBackendError,
    OperationCancelled,
    primary_error,
)
from orrery_engine.hooks import HookRunner
from orrery_engine.llm_gateway import ModelResponse, ToolCallRequest
from orrery_engine.logging_config import bind_operation, get_logger, operation_id_var
from orrery_engine.metrics import METRICS
from orrery_engine.reasoning import reasoning_tools
from orrery_engine.results import TERMINAL_STATES, AgentResult, FinishReason, LoopState
from orrery_engine.tool_registry import ToolRegistry, ToolResult
from orrery_engine.tracing import get_tracer, traced
from orrery_memory.models import MemoryMessage
from orrery_memory.recall import load_history
from orrery_memory.working_memory import WorkingMemoryManager

if TYPE_CHECKING:
    from orrery_agents.base import Agent

logger = logging.getLogger("orrery.engine.step_loop")
tracer = get_tracer("orrery.engine.step_loop")
events = get_logger("orrery.engine.operation")

StopPredicate = Callable[[StepRecord, list[StepRecord]], Any]


def resolve_step_budget(agent: "Agent", override: int | None, config: EngineConfig) -> int:
    if override is not None:
        budget = override
    elif agent.max_steps is not None:
        budget = agent.max_steps
    elif agent.sub_agents:
        budget = config.steps_per_sub_agent * len(agent.sub_agents)
    else:
        budget = config.default_step_budget
    if budget < 1:
        raise ValueError(f"Step budget must be >= 1, got {budget}")
    return budget


class AgentEngine:
    """
    One invocation of an agent's step loop.

    Usage:
        engine = AgentEngine(agent)
        result = await engine.run("Summarise the report", context)

    An engine instance runs once; ``state`` and ``state_history`` describe
    what happened afterwards.
    """

    def __init__(self, agent: "Agent", config: EngineConfig | None = None):
        self.agent = agent
        self.config = config or agent.config
        self.hooks = HookRunner(agent.hooks, self.config.hook_failure_policy)
        self.state = LoopState.IDLE
        self.state_history: list[LoopState] = [LoopState.IDLE]
        self.messages: list[dict[str, Any]] = []
        self.steps: list[StepRecord] = []
        self._current_step: StepRecord | None = None
        self._delegations: list[dict[str, Any]] = []
        self._working_memory: WorkingMemoryManager | None = (
            agent.memory.working_memory_manager() if agent.memory else None
        )

    # ── State ────────────────────────────────────────────────────────────

    def _transition(self, new: LoopState) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.debug("%s: %s → %s", self.agent.name, self.state.value, new.value)
        self.state = new
        self.state_history.append(new)
        if new in TERMINAL_STATES:
            METRICS.operations_total.labels(agent=self.agent.name, state=new.value).inc()
            events.info(
                "operation_finished",
                agent=self.agent.name,
                state=new.value,
                steps=len(self.steps),
                operation_id=operation_id_var.get(),
            )

    # ── Public entry ─────────────────────────────────────────────────────

    async def run(
        self,
        input: str | list[dict[str, Any]],
        context: OperationContext | None = None,
        *,
        max_steps: int | None = None,
        stop_when: StopPredicate | None = None,
        output_schema: type[BaseModel] | None = None,
        propagate_max_steps: bool = False,
        extra_instructions: list[str] | None = None,
    ) -> AgentResult:
        """
        Run the loop to a terminal state.

        Returns:
            AgentResult (final or partial).

        Raises:
            OperationCancelled: the shared signal fired (state ABORTED).
            ModelBackendError / HookError / EngineError: terminal failure (state FAILED).
        """
        if self.state != LoopState.IDLE:
            raise EngineError(f"AgentEngine for {self.agent.name} has already run")
        context = context or OperationContext()
        budget = resolve_step_budget(self.agent, max_steps, self.config)
        schema = output_schema or self.agent.output_schema

        with bind_operation(context.operation_id), traced(
            tracer, "agent.run",
            agent=self.agent.name,
            operation_id=context.operation_id,
            parent_agent=context.parent_agent_id,
            depth=context.depth,
        ):
            METRICS.operations_in_progress.labels(agent=self.agent.name).inc()
            self._transition(LoopState.RUNNING)
            started = time.monotonic()
            try:
                result = await self._run(
                    input, context, budget, stop_when, schema,
                    budget if propagate_max_steps else None,
                    extra_instructions or [],
                )
            except OperationCancelled as e:
                if self._current_step is not None and self._current_step.finished_at is None:
                    self._current_step.finish(StepStatus.ABORTED, e.reason)
                self._transition(LoopState.ABORTED)
                logger.info("%s aborted after %d steps: %s", self.agent.name, len(self.steps), e.reason)
                await self._notify_failure(context, e)
                raise
            except asyncio.CancelledError:
                # the caller cancelled our task directly instead of using the signal
                if self._current_step is not None and self._current_step.finished_at is None:
                    self._current_step.finish(StepStatus.ABORTED, "task cancelled")
                self._transition(LoopState.ABORTED)
                raise
            except Exception as e:
                if self._current_step is not None and self._current_step.finished_at is None:
                    self._current_step.finish(StepStatus.ERROR, str(e))
                self._transition(LoopState.FAILED)
                logger.error("%s failed after %d steps: %s", self.agent.name, len(self.steps), e)
                await self._notify_failure(context, e)
                raise
            finally:
                METRICS.operations_in_progress.labels(agent=self.agent.name).dec()

            logger.info(
                "%s completed in %d steps (%s, %.2fs)",
                self.agent.name, len(self.steps), result.finish_reason.value, time.monotonic() - started,
            )
            return result

    async def _notify_failure(self, context: OperationContext, error: BaseException) -> None:
        """on_error/on_end for a failed or aborted run; hook errors here only log."""
        for slot, args in (
            ("on_error", (context, self.agent, error)),
            ("on_end", (context, self.agent, None, error)),
        ):
            if slot == "on_error" and isinstance(error, OperationCancelled):
                continue
            if isinstance(error, HookError) and error.hook == slot:
                continue
            try:
                await self.hooks.call(slot, *args)
            except HookError as hook_error:
                logger.error("%s raised while reporting %s: %s", slot, type(error).__name__, hook_error)

    async def _run(
        self,
        input: str | list[dict[str, Any]],
        context: OperationContext,
        budget: int,
        stop_when: StopPredicate | None,
        output_schema: type[BaseModel] | None,
        propagated_budget: int | None,
        extra_instructions: list[str],
    ) -> AgentResult:
        context.cancellation.raise_if_cancelled()

        input_messages = [{"role": "user", "content": input}] if isinstance(input, str) else list(input)
        history = await self._load_history(context, input_messages)
        self.messages = await self._build_messages(context, history, input_messages, extra_instructions)

        await self.hooks.call("on_start", context, self.agent)
        prepared = await self.hooks.call("on_prepare_messages", context, self.agent, self.messages)
        if prepared is not None:
            self.messages = list(prepared)

        registry = self._build_registry(propagated_budget)
        tool_schemas = registry.get_tools_for_llm()

        result = await self._loop(context, registry, tool_schemas, budget, stop_when, output_schema)

        context.cancellation.raise_if_cancelled()
        await self._persist(context, input_messages, result)
        await self.hooks.call("on_end", context, self.agent, result, None)
        self._transition(LoopState.COMPLETED)
        return result

    # ── Setup ────────────────────────────────────────────────────────────

    def _build_registry(self, propagated_budget: int | None) -> ToolRegistry:
        builtins = []
        if self.agent.sub_agents:
            protocol = DelegationProtocol(
                supervisor=self.agent,
                run_agent=self._run_sub_agent,
                hooks=self.hooks,
                config=self.config,
                current_step=lambda: self._current_step,
                supervisor_memory=self._recent_conversation,
                max_steps=propagated_budget,
            )
            builtins.append(protocol.tool())
        if self._working_memory is not None:
            builtins.extend(self._working_memory.tools())
        if self.agent.reasoning:
            builtins.extend(reasoning_tools(self.agent.name))
        return self.agent.tools.extended(builtins)

    async def _run_sub_agent(
        self,
        agent: "Agent",
        task: str,
        context: OperationContext,
        *,
        max_steps: int | None = None,
        extra_instructions: list[str] | None = None,
    ) -> AgentResult:
        engine = AgentEngine(agent, agent.config)
        return await engine.run(
            task,
            context,
            max_steps=max_steps,
            propagate_max_steps=max_steps is not None,
            extra_instructions=extra_instructions,
        )

    def _recent_conversation(self) -> list[dict[str, Any]]:
        return [
            {"role": m["role"], "content": m["content"]}
            for m in self.messages
            if m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
            and m.get("content") and not m.get("tool_calls")
        ]

    async def _load_history(
        self,
        context: OperationContext,
        input_messages: list[dict[str, Any]],
    ) -> list[MemoryMessage]:
        memory = self.agent.memory
        if memory is None or not context.conversation_id:
            return []
        limit = self.config.history_limit if memory.history_limit is None else memory.history_limit
        if limit <= 0:
            return []
        query = next(
            (m["content"] for m in reversed(input_messages)
             if m.get("role") == "user" and isinstance(m.get("content"), str)),
            None,
        )
        return await load_history(
            memory.store,
            user_id=context.user_id,
            conversation_id=context.conversation_id,
            query=query,
            limit=limit,
            semantic=memory.semantic,
            config=self.config,
        )

    async def _build_messages(
        self,
        context: OperationContext,
        history: list[MemoryMessage],
        input_messages: list[dict[str, Any]],
        extra_instructions: list[str],
    ) -> list[dict[str, Any]]:
        instructions = await self.agent.resolve_instructions(context)
        if self.agent.sub_agents:
            delegations = [d for m in history for d in m.metadata.get("delegations", [])]
            instructions = supervisor_system_message(
                instructions,
                self.agent.sub_agents,
                agents_memory=format_agents_memory(delegations),
                custom_guidelines=self.agent.supervisor_guidelines,
                include_agents_memory=self.config.include_supervisor_memory,
            )
        sections = [instructions, *extra_instructions]
        if self._working_memory is not None and self._working_memory.scope_id(context):
            sections.append(await self._working_memory.instructions(context))

        messages: list[dict[str, Any]] = [{"role": "system", "content": "\n\n".join(s for s in sections if s)}]
        messages.extend(m.to_llm_message() for m in history)
        messages.extend(input_messages)
        return messages

    # ── Loop ─────────────────────────────────────────────────────────────

    async def _loop(
        self,
        context: OperationContext,
        registry: ToolRegistry,
        tool_schemas: list[dict[str, Any]],
        budget: int,
        stop_when: StopPredicate | None,
        output_schema: type[BaseModel] | None,
    ) -> AgentResult:
        last_text = ""
        last_results: list[ToolResult] = []
        usage = [0, 0]

        for index in range(budget):
            context.cancellation.raise_if_cancelled()

            step = StepRecord(
                agent_name=self.agent.name,
                index=index,
                input_ref=len(self.messages),
                parent_agent_id=context.parent_agent_id,
                parent_step_ref=context.parent_step_ref,
            )
            self._current_step = step
            self.steps.append(step)
            context.step_log.append(step)

            response = await self._call_model(context, tool_schemas, output_schema)
            usage[0] += response.input_tokens
            usage[1] += response.output_tokens
            step.text = response.text or None
            if response.text:
                last_text = response.text

            if not response.has_tool_calls:
                step.object = response.object
                step.finish(StepStatus.OK)
                METRICS.steps_total.labels(agent=self.agent.name, status="ok").inc()
                self.messages.append({"role": "assistant", "content": response.text})
                await self.hooks.call("on_step_finish", context, self.agent, step)
                return self._result(context, FinishReason.STOP, response.text, response.object, [], usage)

            step.tool_calls = [c.to_message_dict() for c in response.tool_calls]
            self.messages.append({
                "role": "assistant",
                "content": response.text or None,
                "tool_calls": step.tool_calls,
            })

            last_results = await self._run_tools(response.tool_calls, registry, context)
            context.cancellation.raise_if_cancelled()

            for r in last_results:
                self.messages.append(r.to_message())
                if r.name == DELEGATE_TOOL_NAME and r.success and isinstance(r.data, list):
                    self._delegations.extend(r.data)
            step.tool_results = [r.to_dict() for r in last_results]
            step.finish(StepStatus.OK)
            METRICS.steps_total.labels(agent=self.agent.name, status="ok").inc()
            await self.hooks.call("on_step_finish", context, self.agent, step)

            if stop_when is not None:
                stop = stop_when(step, list(self.steps))
                if inspect.isawaitable(stop):
                    stop = await stop
                if stop:
                    logger.info("%s stopped by predicate at step %d", self.agent.name, index + 1)
                    return self._result(context, FinishReason.STOP_PREDICATE, last_text, None, last_results, usage)

        logger.warning("%s hit its step budget (%d) with tool calls pending", self.agent.name, budget)
        return self._result(context, FinishReason.STEP_BUDGET, last_text, None, last_results, usage)

    def _result(
        self,
        context: OperationContext,
        reason: FinishReason,
        text: str,
        obj: Any,
        tool_results: list[ToolResult],
        usage: list[int],
    ) -> AgentResult:
        return AgentResult(
            agent_name=self.agent.name,
            operation_id=context.operation_id,
            text=text,
            object=obj,
            finish_reason=reason,
            steps=list(self.steps),
            tool_results=tool_results,
            messages=list(self.messages),
            input_tokens=usage[0],
            output_tokens=usage[1],
        )

    async def _call_model(
        self,
        context: OperationContext,
        tool_schemas: list[dict[str, Any]],
        output_schema: type[BaseModel] | None,
    ) -> ModelResponse:
        context.cancellation.raise_if_cancelled()
        backend = self.agent.model
        with traced(tracer, "agent.model_call", agent=self.agent.name, model=getattr(backend, "name", None)):
            try:
                return await context.cancellation.race(
                    backend.invoke(
                        list(self.messages),
                        tool_schemas or None,
                        cancellation=context.cancellation,
                        output_schema=output_schema,
                    )
                )
            except (OperationCancelled, ModelBackendError):
                raise
            except Exception as e:
                raise ModelBackendError(f"Model backend {getattr(backend, 'name', backend)!s} failed: {e}") from e

    async def _run_tools(
        self,
        calls: list[ToolCallRequest],
        registry: ToolRegistry,
        context: OperationContext,
    ) -> list[ToolResult]:
        if len(calls) == 1:
            return [await self._run_tool(calls[0], registry, context)]

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(self._run_tool(call, registry, context)) for call in calls]
        except BaseExceptionGroup as group:
            raise primary_error(group) from None
        return [t.result() for t in tasks]

    async def _run_tool(
        self,
        call: ToolCallRequest,
        registry: ToolRegistry,
        context: OperationContext,
    ) -> ToolResult:
        context.cancellation.raise_if_cancelled()
        await self.hooks.call("on_tool_start", context, self.agent, call.name, call.arguments)
        result = await registry.execute(call.id, call.name, call.arguments, context)
        await self.hooks.call(
            "on_tool_end", context, self.agent, call.name, result, None if result.success else result.error
        )
        return result

    # ── Memory commit ────────────────────────────────────────────────────

    async def _persist(
        self,
        context: OperationContext,
        input_messages: list[dict[str, Any]],
        result: AgentResult,
    ) -> None:
        memory = self.agent.memory
        if memory is None or not memory.persist or not context.conversation_id:
            return
        to_store = [
            MemoryMessage.from_llm_message(m, context.user_id, context.conversation_id)
            for m in input_messages
            if m.get("role") in ("user", "system")
        ]
        answer = result.text
        if result.object is not None and not answer:
            answer = result.object.model_dump_json() if isinstance(result.object, BaseModel) else str(result.object)
        if answer:
            metadata: dict[str, Any] = {"finish_reason": result.finish_reason.value}
            if self._delegations:
                metadata["delegations"] = self._delegations
            to_store.append(MemoryMessage(
                role="assistant",
                content=answer,
                user_id=context.user_id,
                conversation_id=context.conversation_id,
                metadata=metadata,
            ))
        await memory.store.add_messages(to_store, context.user_id, context.conversation_id)
