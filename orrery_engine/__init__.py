"""
Orrery Engine — agent execution core.

- Step loop (model call → tools → model call, bounded by a step budget)
- Delegation to sub-agents through the delegate_task tool
- Operation context shared by reference across the call tree
- Cooperative cancellation and lifecycle hooks
- Model backends (litellm SDK) and a schema-validating tool registry
"""

__version__ = "0.1.0"

from orrery_engine.cancellation import CancellationSource
from orrery_engine.config import EngineConfig
from orrery_engine.context import OperationContext, StepRecord, StepStatus
from orrery_engine.exceptions import (
    ConfigurationError,
    DelegationError,
    EngineError,
    HookError,
    ModelBackendError,
    OperationCancelled,
    ToolError,
    ToolValidationError,
    WorkingMemoryDisabledError,
    WorkingMemoryValidationError,
)
from orrery_engine.hooks import AgentHooks

__all__ = [
    "AgentHooks",
    "CancellationSource",
    "ConfigurationError",
    "DelegationError",
    "EngineConfig",
    "EngineError",
    "HookError",
    "ModelBackendError",
    "OperationCancelled",
    "OperationContext",
    "StepRecord",
    "StepStatus",
    "ToolError",
    "ToolValidationError",
    "WorkingMemoryDisabledError",
    "WorkingMemoryValidationError",
]
