"""Engine-specific exceptions."""
from typing import Any


class EngineError(Exception):
    """Base exception for orrery_engine."""
    pass


class ConfigurationError(EngineError):
    """Invalid agent/tool wiring detected at construction time."""
    pass


class ModelBackendError(EngineError):
    """Model backend errors (unavailable, timeout, malformed response)."""
    pass


class ToolError(EngineError):
    """Tool calling errors."""
    pass


class ToolValidationError(ToolError):
    """Arguments rejected before a tool handler ran."""
    pass


class DelegationError(ToolValidationError):
    """delegate_task called with an empty task or unknown/too-deep targets."""
    pass


class WorkingMemoryValidationError(ToolValidationError):
    """Working-memory content does not match the configured shape."""
    pass


class WorkingMemoryDisabledError(ToolValidationError):
    """Working memory was used on an agent that has it switched off."""
    pass


class HookError(EngineError):
    """A lifecycle hook raised."""

    def __init__(self, hook: str, cause: BaseException):
        super().__init__(f"Hook {hook} failed: {cause}")
        self.hook = hook
        self.cause = cause


class OperationCancelled(EngineError):
    """The operation's shared cancellation signal fired."""

    def __init__(self, reason: str = "cancelled", operation_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.operation_id = operation_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "cancelled",
            "reason": self.reason,
            "operation_id": self.operation_id,
        }


def primary_error(group: BaseExceptionGroup) -> BaseException:
    """Pick the exception that decides the outcome of a failed TaskGroup."""
    leaves: list[BaseException] = []

    def walk(g: BaseExceptionGroup) -> None:
        for e in g.exceptions:
            if isinstance(e, BaseExceptionGroup):
                walk(e)
            else:
                leaves.append(e)

    walk(group)
    for kind in (OperationCancelled, HookError):
        for e in leaves:
            if isinstance(e, kind):
                return e
    return leaves[0]
