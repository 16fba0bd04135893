"""In-process vector index for semantic recall."""
import asyncio
import math
from dataclasses import dataclass, field
from typing import Any, Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero length."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass
class VectorHit:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryVectorIndex:
    """Brute-force cosine index keyed by message id."""

    def __init__(self):
        self._vectors: dict[str, tuple[list[float], dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, item_id: str, vector: Sequence[float], metadata: dict[str, Any] | None = None) -> None:
        async with self._lock:
            self._vectors[item_id] = (list(vector), dict(metadata or {}))

    async def delete(self, item_ids: Sequence[str]) -> None:
        async with self._lock:
            for item_id in item_ids:
                self._vectors.pop(item_id, None)

    async def search(
        self,
        vector: Sequence[float],
        *,
        limit: int = 5,
        threshold: float = 0.0,
        where: dict[str, Any] | None = None,
    ) -> list[VectorHit]:
        """Top ``limit`` hits scoring at least ``threshold``, best first."""
        async with self._lock:
            items = list(self._vectors.items())
        hits = []
        for item_id, (stored, metadata) in items:
            if where and any(metadata.get(k) != v for k, v in where.items()):
                continue
            score = cosine_similarity(vector, stored)
            if score >= threshold:
                hits.append(VectorHit(item_id, score, metadata))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def __len__(self) -> int:
        return len(self._vectors)
