"""Memory records shared by every store implementation."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkingMemoryScope(str, Enum):
    CONVERSATION = "conversation"
    USER = "user"


@dataclass
class MemoryMessage:
    """One conversation message as persisted by a MemoryStore."""
    role: str
    content: str | list[dict[str, Any]]
    user_id: str | None = None
    conversation_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if self.created_at.tzinfo is None:
            self.created_at = self.created_at.replace(tzinfo=timezone.utc)

    @property
    def text(self) -> str:
        """Plain-text view of the content (text parts joined)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            part.get("text", "") for part in self.content if isinstance(part, dict) and part.get("type") == "text"
        )

    def to_llm_message(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls
        return msg

    @classmethod
    def from_llm_message(
        cls,
        message: dict[str, Any],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> "MemoryMessage":
        return cls(
            role=message["role"],
            content=message.get("content") or "",
            user_id=user_id,
            conversation_id=conversation_id,
            name=message.get("name"),
            tool_call_id=message.get("tool_call_id"),
            tool_calls=message.get("tool_calls"),
        )


@dataclass
class WorkingMemoryRecord:
    """The single scratchpad payload stored for ``(scope, scope_id)``."""
    scope: WorkingMemoryScope
    scope_id: str
    content: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SimilarMessage:
    message: MemoryMessage
    score: float
