"""
Operation context — per-operation state shared by reference across the call tree.

One OperationContext is created per top-level call. Delegation never copies
it: ``child()`` returns a view that shares the operation id, cancellation
source, attribute bag and step log, and only differs in its parent pointers.
"""
import threading
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from orrery_engine.cancellation import CancellationSource


class StepStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class StepRecord:
    """One model round-trip of one agent, plus the tools it triggered."""
    agent_name: str
    index: int
    input_ref: int = 0
    step_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    text: str | None = None
    object: Any = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    status: StepStatus = StepStatus.OK
    error: str | None = None
    parent_agent_id: str | None = None
    parent_step_ref: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def finish(self, status: StepStatus = StepStatus.OK, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "agent_name": self.agent_name,
            "index": self.index,
            "input_ref": self.input_ref,
            "text": self.text,
            "object": self.object,
            "tool_calls": self.tool_calls,
            "tool_results": self.tool_results,
            "status": self.status.value,
            "error": self.error,
            "parent_agent_id": self.parent_agent_id,
            "parent_step_ref": self.parent_step_ref,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class AttributeBag(MutableMapping):
    """Key/value map safe for concurrent tool executions (last write wins)."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._lock = threading.Lock()
        self._data: dict[str, Any] = dict(initial or {})

    def __getitem__(self, key: str) -> Any:
        with self._lock:
            return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def __delitem__(self, key: str) -> None:
        with self._lock:
            del self._data[key]

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._data))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._data)

    def __repr__(self) -> str:
        return f"AttributeBag({self.snapshot()!r})"


class StepLog:
    """Append-only step trace; concurrent appends from parallel branches are safe."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[StepRecord] = []

    def append(self, record: StepRecord) -> None:
        with self._lock:
            self._records.append(record)

    def __iter__(self) -> Iterator[StepRecord]:
        with self._lock:
            return iter(list(self._records))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def for_agent(self, agent_name: str) -> list[StepRecord]:
        return [r for r in self if r.agent_name == agent_name]

    def children_of(self, step_id: str) -> list[StepRecord]:
        """Steps recorded by sub-agents delegated from ``step_id``."""
        return [r for r in self if r.parent_step_ref == step_id]

    def get(self, step_id: str) -> StepRecord | None:
        for r in self:
            if r.step_id == step_id:
                return r
        return None

    def to_list(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self]


class OperationContext:
    """
    Mutable state for one user-triggered operation.

    Args:
        attributes: Initial attribute values.
        user_id: Memory scope for user-level records.
        conversation_id: Memory scope for conversation history.
        cancellation: Existing cancellation source (e.g. owned by a timeout guard).
    """

    __slots__ = (
        "_operation_id",
        "cancellation",
        "attributes",
        "step_log",
        "user_id",
        "conversation_id",
        "parent_agent_id",
        "parent_step_ref",
        "depth",
    )

    def __init__(
        self,
        attributes: dict[str, Any] | None = None,
        user_id: str | None = None,
        conversation_id: str | None = None,
        cancellation: CancellationSource | None = None,
        operation_id: str | None = None,
    ):
        self._operation_id = operation_id or uuid.uuid4().hex
        self.cancellation = cancellation or CancellationSource(self._operation_id)
        if self.cancellation.operation_id is None:
            self.cancellation.operation_id = self._operation_id
        self.attributes = AttributeBag(attributes)
        self.step_log = StepLog()
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.parent_agent_id: str | None = None
        self.parent_step_ref: str | None = None
        self.depth = 0

    @property
    def operation_id(self) -> str:
        return self._operation_id

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation.is_cancelled

    def cancel(self, reason: str = "cancelled") -> bool:
        return self.cancellation.cancel(reason)

    def child(
        self,
        parent_agent_id: str,
        parent_step_ref: str | None,
        conversation_id: str | None = None,
    ) -> "OperationContext":
        """View for a delegated invocation; shares every mutable part by reference."""
        view = object.__new__(OperationContext)
        view._operation_id = self._operation_id
        view.cancellation = self.cancellation
        view.attributes = self.attributes
        view.step_log = self.step_log
        view.user_id = self.user_id
        view.conversation_id = conversation_id or self.conversation_id
        view.parent_agent_id = parent_agent_id
        view.parent_step_ref = parent_step_ref
        view.depth = self.depth + 1
        return view

    def __repr__(self) -> str:
        return (
            f"OperationContext(operation_id={self._operation_id!r}, depth={self.depth}, "
            f"parent_agent_id={self.parent_agent_id!r}, steps={len(self.step_log)})"
        )
