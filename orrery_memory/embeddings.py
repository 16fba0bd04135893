"""Text embedding adapters used for semantic recall."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Sequence

from litellm import aembedding

from orrery_engine.exceptions import ModelBackendError

logger = logging.getLogger("orrery.memory.embeddings")


class Embedder(ABC):
    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """One vector per input text, same order."""

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]


class LiteLLMEmbedder(Embedder):
    """
    Embeddings through litellm.aembedding (any provider litellm routes to).

    Usage:
        embedder = LiteLLMEmbedder("text-embedding-3-small")
        vectors = await embedder.embed(["hello", "world"])
    """

    def __init__(self, model: str = "text-embedding-3-small", timeout_seconds: float = 30.0, **extra):
        self.model = model
        self.timeout = timeout_seconds
        self._extra = extra

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = await asyncio.wait_for(
                aembedding(model=self.model, input=list(texts), **self._extra),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ModelBackendError(f"Embedding timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error("Embedding call failed: %s", e)
            raise ModelBackendError(f"Embedding failed: {e}") from e

        rows = sorted(response.data, key=lambda d: d["index"] if isinstance(d, dict) else d.index)
        return [list(d["embedding"] if isinstance(d, dict) else d.embedding) for d in rows]
