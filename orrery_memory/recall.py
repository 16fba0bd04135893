"""
History loading for the step loop: recent messages plus optional semantic recall.

Merge strategies (how semantic hits join the recent window):
    prepend     semantic hits first, then recent messages
    append      recent messages first, then semantic hits (default)
    interleave  alternate recent / semantic, starting with recent
Semantic hits already present in the recent window are dropped.
"""
import logging
from dataclasses import dataclass, replace
from itertools import zip_longest

from orrery_engine.config import EngineConfig
from orrery_engine.exceptions import OperationCancelled
from orrery_memory.models import MemoryMessage
from orrery_memory.store import MemoryStore

logger = logging.getLogger("orrery.memory.recall")


@dataclass
class SemanticRecallOptions:
    """Unset fields take ``semantic_limit`` / ``semantic_threshold`` / ``semantic_merge_strategy`` from EngineConfig."""
    enabled: bool = True
    limit: int | None = None
    threshold: float | None = None
    merge_strategy: str | None = None

    def resolved(self, config: EngineConfig) -> "SemanticRecallOptions":
        return replace(
            self,
            limit=config.semantic_limit if self.limit is None else self.limit,
            threshold=config.semantic_threshold if self.threshold is None else self.threshold,
            merge_strategy=config.semantic_merge_strategy if self.merge_strategy is None else self.merge_strategy,
        )


def merge_messages(
    recent: list[MemoryMessage],
    similar: list[MemoryMessage],
    strategy: str = "append",
) -> list[MemoryMessage]:
    seen = {m.id for m in recent}
    extra = []
    for m in similar:
        if m.id not in seen:
            seen.add(m.id)
            extra.append(m)

    if strategy == "prepend":
        return extra + recent
    if strategy == "append":
        return recent + extra
    if strategy == "interleave":
        merged = []
        for r, s in zip_longest(recent, extra):
            if r is not None:
                merged.append(r)
            if s is not None:
                merged.append(s)
        return merged
    raise ValueError(f"Unknown merge strategy: {strategy!r}")


async def load_history(
    store: MemoryStore,
    *,
    user_id: str | None,
    conversation_id: str,
    query: str | None,
    limit: int | None = None,
    semantic: SemanticRecallOptions | None = None,
    config: EngineConfig | None = None,
) -> list[MemoryMessage]:
    """
    Recent ``limit`` messages, merged with semantic hits for ``query`` when
    the store supports it. Embedding failures degrade to recency-only.

    ``limit`` and unset semantic options fall back to ``config``
    (``EngineConfig.from_env()`` when omitted).
    """
    config = config or EngineConfig.from_env()
    if limit is None:
        limit = config.history_limit
    recent = await store.get_messages(user_id, conversation_id, limit=limit)

    if not (semantic and semantic.enabled and query and store.supports_semantic_search):
        return recent
    semantic = semantic.resolved(config)

    try:
        hits = await store.search_similar(
            query,
            user_id=user_id,
            conversation_id=conversation_id,
            limit=semantic.limit,
            threshold=semantic.threshold,
        )
    except OperationCancelled:
        raise
    except Exception as e:
        # ModelBackendError from LiteLLMEmbedder, anything from a custom Embedder
        logger.warning("Semantic recall unavailable, using recent history only: %s", e)
        return recent

    return merge_messages(recent, [h.message for h in hits], semantic.merge_strategy)
