"""
MemoryStore — the persistence contract the step loop depends on.

Required: append messages, read them back in chronological order with
limit/time-range/role filters, and get/set/clear one working-memory record
per scope key. Semantic search is optional; stores that cannot do it leave
``supports_semantic_search`` False and the engine falls back to recency.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Sequence

from orrery_engine.config import EngineConfig
from orrery_memory.models import (
    MemoryMessage,
    SimilarMessage,
    WorkingMemoryRecord,
    WorkingMemoryScope,
)


class MemoryStore(ABC):
    """Abstract message + working-memory store."""

    storage_limit: int = 100

    @abstractmethod
    async def add_messages(
        self,
        messages: Sequence[MemoryMessage],
        user_id: str | None,
        conversation_id: str,
    ) -> None:
        """Append messages to a conversation, pruning oldest past ``storage_limit``."""

    async def add_message(self, message: MemoryMessage, user_id: str | None, conversation_id: str) -> None:
        await self.add_messages([message], user_id, conversation_id)

    @abstractmethod
    async def get_messages(
        self,
        user_id: str | None,
        conversation_id: str,
        *,
        limit: int | None = None,
        before: datetime | None = None,
        after: datetime | None = None,
        roles: Iterable[str] | None = None,
    ) -> list[MemoryMessage]:
        """Messages in chronological order; with ``limit`` the most recent N."""

    @abstractmethod
    async def clear_messages(self, user_id: str | None, conversation_id: str | None = None) -> int:
        """Delete one conversation (or all of a user's); returns rows removed."""

    @abstractmethod
    async def get_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> WorkingMemoryRecord | None:
        ...

    @abstractmethod
    async def set_working_memory(self, scope: WorkingMemoryScope, scope_id: str, content: str) -> WorkingMemoryRecord:
        ...

    @abstractmethod
    async def clear_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> bool:
        ...

    @property
    def supports_semantic_search(self) -> bool:
        return False

    async def search_similar(
        self,
        query: str,
        *,
        user_id: str | None,
        conversation_id: str | None = None,
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[SimilarMessage]:
        raise NotImplementedError(f"{type(self).__name__} does not support semantic search")


def select_messages(
    messages: Iterable[MemoryMessage],
    *,
    limit: int | None = None,
    before: datetime | None = None,
    after: datetime | None = None,
    roles: Iterable[str] | None = None,
) -> list[MemoryMessage]:
    """Filter then keep the most recent ``limit``, returned oldest first."""
    role_set = set(roles) if roles else None
    selected = [
        m for m in messages
        if (role_set is None or m.role in role_set)
        and (before is None or m.created_at < before)
        and (after is None or m.created_at > after)
    ]
    selected.sort(key=lambda m: m.created_at)
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected


def resolve_storage_limit(storage_limit: int | None, config: EngineConfig | None = None) -> int:
    """Explicit limit wins; otherwise ``EngineConfig.storage_limit`` (0 disables pruning)."""
    if storage_limit is not None:
        return storage_limit
    return (config or EngineConfig.from_env()).storage_limit
