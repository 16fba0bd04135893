"""
In-process MemoryStore.

Conversations live in a dict keyed by ``(user_id, conversation_id)`` guarded
by an asyncio.Lock. When an embedder is supplied, user and assistant text is
embedded on write so ``search_similar`` can serve semantic recall.
"""
import asyncio
import logging
from datetime import datetime
from typing import Iterable, Sequence

from orrery_engine.config import EngineConfig
from orrery_engine.exceptions import OperationCancelled
from orrery_memory.embeddings import Embedder
from orrery_memory.models import (
    MemoryMessage,
    SimilarMessage,
    WorkingMemoryRecord,
    WorkingMemoryScope,
    utcnow,
)
from orrery_memory.store import MemoryStore, resolve_storage_limit, select_messages
from orrery_memory.vector import InMemoryVectorIndex

logger = logging.getLogger("orrery.memory.inmemory")

EMBEDDED_ROLES = ("user", "assistant")


class InMemoryMemoryStore(MemoryStore):
    """Dict-backed store for tests and single-process deployments."""

    def __init__(
        self,
        storage_limit: int | None = None,
        embedder: Embedder | None = None,
        vector_index: InMemoryVectorIndex | None = None,
        config: EngineConfig | None = None,
    ):
        self.storage_limit = resolve_storage_limit(storage_limit, config)
        self._conversations: dict[tuple[str | None, str], list[MemoryMessage]] = {}
        self._working: dict[tuple[WorkingMemoryScope, str], WorkingMemoryRecord] = {}
        self._lock = asyncio.Lock()
        self._embedder = embedder
        self._index = vector_index if vector_index is not None else (InMemoryVectorIndex() if embedder else None)

    # ── Messages ─────────────────────────────────────────────────────────

    async def add_messages(
        self,
        messages: Sequence[MemoryMessage],
        user_id: str | None,
        conversation_id: str,
    ) -> None:
        if not messages:
            return
        key = (user_id, conversation_id)
        async with self._lock:
            bucket = self._conversations.setdefault(key, [])
            for m in messages:
                m.user_id = user_id
                m.conversation_id = conversation_id
                bucket.append(m)
            bucket.sort(key=lambda m: m.created_at)
            pruned: list[MemoryMessage] = []
            if self.storage_limit and len(bucket) > self.storage_limit:
                excess = len(bucket) - self.storage_limit
                pruned, bucket[:] = bucket[:excess], bucket[excess:]

        if pruned:
            logger.debug("Pruned %d oldest messages from %s", len(pruned), conversation_id)
            if self._index is not None:
                await self._index.delete([m.id for m in pruned])

        if self._embedder is not None and self._index is not None:
            await self._embed(messages, user_id, conversation_id, pruned)

    async def _embed(self, messages, user_id, conversation_id, pruned) -> None:
        pruned_ids = {m.id for m in pruned}
        todo = [m for m in messages if m.role in EMBEDDED_ROLES and m.text and m.id not in pruned_ids]
        if not todo:
            return
        try:
            vectors = await self._embedder.embed([m.text for m in todo])
        except OperationCancelled:
            raise
        except Exception as e:
            # messages are already stored; they just stay out of semantic recall
            logger.warning("Embedding %d messages for %s failed, skipping index: %s", len(todo), conversation_id, e)
            return
        for m, vector in zip(todo, vectors):
            await self._index.upsert(m.id, vector, {"user_id": user_id, "conversation_id": conversation_id})

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
        async with self._lock:
            bucket = list(self._conversations.get((user_id, conversation_id), ()))
        return select_messages(bucket, limit=limit, before=before, after=after, roles=roles)

    async def clear_messages(self, user_id: str | None, conversation_id: str | None = None) -> int:
        async with self._lock:
            keys = [
                k for k in self._conversations
                if k[0] == user_id and (conversation_id is None or k[1] == conversation_id)
            ]
            removed = [m for k in keys for m in self._conversations.pop(k)]
        if self._index is not None and removed:
            await self._index.delete([m.id for m in removed])
        return len(removed)

    # ── Working memory ───────────────────────────────────────────────────

    async def get_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> WorkingMemoryRecord | None:
        async with self._lock:
            return self._working.get((WorkingMemoryScope(scope), scope_id))

    async def set_working_memory(self, scope: WorkingMemoryScope, scope_id: str, content: str) -> WorkingMemoryRecord:
        record = WorkingMemoryRecord(WorkingMemoryScope(scope), scope_id, content, utcnow())
        async with self._lock:
            self._working[(record.scope, scope_id)] = record
        return record

    async def clear_working_memory(self, scope: WorkingMemoryScope, scope_id: str) -> bool:
        async with self._lock:
            return self._working.pop((WorkingMemoryScope(scope), scope_id), None) is not None

    # ── Semantic search ──────────────────────────────────────────────────

    @property
    def supports_semantic_search(self) -> bool:
        return self._embedder is not None and self._index is not None

    async def search_similar(
        self,
        query: str,
        *,
        user_id: str | None,
        conversation_id: str | None = None,
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[SimilarMessage]:
        if not self.supports_semantic_search:
            return await super().search_similar(
                query, user_id=user_id, conversation_id=conversation_id, limit=limit, threshold=threshold
            )
        where = {"user_id": user_id}
        if conversation_id is not None:
            where["conversation_id"] = conversation_id
        vector = await self._embedder.embed_one(query)
        hits = await self._index.search(vector, limit=limit, threshold=threshold, where=where)

        async with self._lock:
            by_id = {
                m.id: m
                for (uid, _), bucket in self._conversations.items() if uid == user_id
                for m in bucket
            }
        return [SimilarMessage(by_id[h.id], h.score) for h in hits if h.id in by_id]
