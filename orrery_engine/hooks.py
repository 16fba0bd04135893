"""
Lifecycle hooks — fixed named callback slots observed by the step loop.

Every slot is optional and may be a plain function or a coroutine function.
Hooks run inline in the calling flow; a hook that raises fails the operation
(``HookError``) unless the engine is configured with
``hook_failure_policy="log"``.

Slots:
    on_start(context, agent)
    on_end(context, agent, result, error)
    on_tool_start(context, agent, tool_name, args)
    on_tool_end(context, agent, tool_name, result, error)
    on_handoff(context, source_agent, target_agent)
    on_prepare_messages(context, agent, messages) -> list | None
    on_step_finish(context, agent, step)
    on_error(context, agent, error)
"""
import inspect
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable

from orrery_engine.exceptions import HookError, OperationCancelled

logger = logging.getLogger("orrery.engine.hooks")

HookFn = Callable[..., Any]


@dataclass
class AgentHooks:
    """Observer callbacks for one agent."""
    on_start: HookFn | None = None
    on_end: HookFn | None = None
    on_tool_start: HookFn | None = None
    on_tool_end: HookFn | None = None
    on_handoff: HookFn | None = None
    on_prepare_messages: HookFn | None = None
    on_step_finish: HookFn | None = None
    on_error: HookFn | None = None

    def merge(self, other: "AgentHooks | None") -> "AgentHooks":
        """Combine two hook sets; both callbacks run, ``self`` first."""
        if other is None:
            return self
        merged = {}
        for f in fields(self):
            first, second = getattr(self, f.name), getattr(other, f.name)
            if first and second:
                merged[f.name] = _chain(f.name, first, second)
            else:
                merged[f.name] = first or second
        return AgentHooks(**merged)


def _chain(name: str, first: HookFn, second: HookFn) -> HookFn:
    async def chained(*args):
        result = await _maybe_await(first(*args))
        if name == "on_prepare_messages" and result is not None:
            args = (*args[:-1], result)
        second_result = await _maybe_await(second(*args))
        return second_result if second_result is not None else result
    return chained


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class HookRunner:
    """Invokes AgentHooks slots with the configured failure policy."""

    def __init__(self, hooks: AgentHooks | None, failure_policy: str = "raise"):
        self.hooks = hooks or AgentHooks()
        self.failure_policy = failure_policy

    async def call(self, slot: str, *args: Any) -> Any:
        fn = getattr(self.hooks, slot, None)
        if fn is None:
            return None
        try:
            return await _maybe_await(fn(*args))
        except OperationCancelled:
            raise
        except Exception as e:
            if self.failure_policy == "log":
                logger.warning("Hook %s failed (ignored): %s", slot, e)
                return None
            logger.error("Hook %s failed: %s", slot, e)
            raise HookError(slot, e) from e
