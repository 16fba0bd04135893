"""
SQLAlchemy 2.0 async MemoryStore.

Works with any async driver URL; tests use ``sqlite+aiosqlite://`` and
PostgreSQL deployments use ``postgresql+asyncpg://`` or
``postgresql+psycopg://``.

Tables:
  - orrery_memory_messages: conversation history
  - orrery_working_memory:  one scratchpad row per (scope, scope_id)
"""
import json
import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import DateTime, Index, Integer, String, Text, delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from orrery_engine.config import EngineConfig
from orrery_memory.models import (
    MemoryMessage,
    WorkingMemoryRecord,
    WorkingMemoryScope,
    utcnow,
)
from orrery_memory.store import MemoryStore, resolve_storage_limit

logger = logging.getLogger("orrery.memory.sql")


# ── ORM models ───────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


class MessageRow(Base):
    __tablename__ = "orrery_memory_messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    conversation_id: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(10), nullable=False, default="text")
    name: Mapped[str | None] = mapped_column(String(200))
    tool_call_id: Mapped[str | None] = mapped_column(String(200))
    tool_calls: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("idx_memory_messages_conv_created", MessageRow.user_id, MessageRow.conversation_id, MessageRow.created_at)


class WorkingMemoryRow(Base):
    __tablename__ = "orrery_working_memory"

    scope: Mapped[str] = mapped_column(String(20), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ── Row conversion ───────────────────────────────────────────────────────────

def _to_row(m: MemoryMessage, user_id: str | None, conversation_id: str) -> MessageRow:
    structured = not isinstance(m.content, str)
    return MessageRow(
        id=m.id,
        user_id=user_id or "",
        conversation_id=conversation_id,
        role=m.role,
        content=json.dumps(m.content) if structured else m.content,
        content_type="parts" if structured else "text",
        name=m.name,
        tool_call_id=m.tool_call_id,
        tool_calls=json.dumps(m.tool_calls) if m.tool_calls else None,
        metadata_json=json.dumps(m.metadata or {}),
        created_at=m.created_at,
    )


def _from_row(row: MessageRow) -> MemoryMessage:
    content: Any = json.loads(row.content) if row.content_type == "parts" else row.content
    return MemoryMessage(
        id=row.id,
        role=row.role,
        content=content,
        user_id=row.user_id or None,
        conversation_id=row.conversation_id,
        created_at=row.created_at,
        name=row.name,
        tool_call_id=row.tool_call_id,
        tool_calls=json.loads(row.tool_calls) if row.tool_calls else None,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class SqlMemoryStore(MemoryStore):
    """
    MemoryStore on SQLAlchemy async sessions.

    Usage:
        store = SqlMemoryStore("sqlite+aiosqlite:///memory.db")
        await store.create_tables()
    """

    def __init__(
        self,
        url_or_engine: str | AsyncEngine,
        storage_limit: int | None = None,
        config: EngineConfig | None = None,
        **engine_kwargs,
    ):
        if isinstance(url_or_engine, str):
            self._engine = create_async_engine(url_or_engine, **engine_kwargs)
        else:
            self._engine = url_or_engine
        self._sessions = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self.storage_limit = resolve_storage_limit(storage_limit, config)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── Messages ─────────────────────────────────────────────────────────

    async def add_messages(
        self,
        messages: Sequence[MemoryMessage],
        user_id: str | None,
        conversation_id: str,
    ) -> None:
        if not messages:
            return
        async with self._sessions() as session, session.begin():
            session.add_all([_to_row(m, user_id, conversation_id) for m in messages])
            await session.flush()
            if self.storage_limit:
                await self._prune(session, user_id or "", conversation_id)

    async def _prune(self, session: AsyncSession, user_id: str, conversation_id: str) -> None:
        scope = (MessageRow.user_id == user_id, MessageRow.conversation_id == conversation_id)
        total = await session.scalar(select(func.count()).select_from(MessageRow).where(*scope))
        excess = (total or 0) - self.storage_limit
        if excess <= 0:
            return
        oldest = (
            select(MessageRow.seq)
            .where(*scope)
            .order_by(MessageRow.created_at.asc(), MessageRow.seq.asc())
            .limit(excess)
        )
        doomed = list(await session.scalars(oldest))
        await session.execute(delete(MessageRow).where(MessageRow.seq.in_(doomed)))
        logger.debug("Pruned %d oldest messages from %s", len(doomed), conversation_id)

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
        if limit is not None and limit <= 0:
            return []
        stmt = select(MessageRow).where(
            MessageRow.user_id == (user_id or ""),
            MessageRow.conversation_id == conversation_id,
        )
        if roles:
            stmt = stmt.where(MessageRow.role.in_(list(roles)))
        if before is not None:
            stmt = stmt.where(MessageRow.created_at < before)
        if after is not None:
            stmt = stmt.where(MessageRow.created_at > after)
        stmt = stmt.order_by(MessageRow.created_at.desc(), MessageRow.seq.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._sessions() as session:
            rows = list(await session.scalars(stmt))
        rows.reverse()
        return [_from_row(r) for r in rows]

    async def clear_messages(self, user_id: str | None, conversation_id: str | None = None) -> int:
        stmt = delete(MessageRow).where(MessageRow.user_id == (user_id or ""))
        if conversation_id is not None:
            stmt = stmt.where(MessageRow.conversation_id == conversation_id)
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
            removed = result.rowcount or 0
        return removed

    # ── Working memory ───────────────────────────────────────────────────

    async def get_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> WorkingMemoryRecord | None:
        scope = WorkingMemoryScope(scope)
        async with self._sessions() as session:
            row = await session.get(WorkingMemoryRow, (scope.value, scope_id))
        if row is None:
            return None
        return WorkingMemoryRecord(scope, scope_id, row.content, row.updated_at)

    async def set_working_memory(self, scope: WorkingMemoryScope, scope_id: str, content: str) -> WorkingMemoryRecord:
        scope = WorkingMemoryScope(scope)
        now = utcnow()
        async with self._sessions() as session, session.begin():
            row = await session.get(WorkingMemoryRow, (scope.value, scope_id))
            if row is None:
                session.add(WorkingMemoryRow(scope=scope.value, scope_id=scope_id, content=content, updated_at=now))
            else:
                row.content = content
                row.updated_at = now
        return WorkingMemoryRecord(scope, scope_id, content, now)

    async def clear_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> bool:
        scope = WorkingMemoryScope(scope)
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                delete(WorkingMemoryRow).where(
                    WorkingMemoryRow.scope == scope.value,
                    WorkingMemoryRow.scope_id == scope_id,
                )
            )
            removed = bool(result.rowcount)
        return removed
