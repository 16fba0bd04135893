"""
orrery_memory — conversation history, working memory and semantic recall.

Stores:
    InMemoryMemoryStore  dict-backed, optional embedder for semantic recall
    SqlMemoryStore       SQLAlchemy async (sqlite+aiosqlite, PostgreSQL)
"""
from orrery_memory.config import MemoryConfig
from orrery_memory.embeddings import Embedder, LiteLLMEmbedder
from orrery_memory.inmemory import InMemoryMemoryStore
from orrery_memory.models import MemoryMessage, SimilarMessage, WorkingMemoryRecord, WorkingMemoryScope
from orrery_memory.recall import SemanticRecallOptions, load_history, merge_messages
from orrery_memory.sql import SqlMemoryStore
from orrery_memory.store import MemoryStore
from orrery_memory.vector import InMemoryVectorIndex, cosine_similarity
from orrery_memory.working_memory import WorkingMemoryConfig, WorkingMemoryManager, WorkingMemoryMode

__all__ = [
    "Embedder",
    "InMemoryMemoryStore",
    "InMemoryVectorIndex",
    "LiteLLMEmbedder",
    "MemoryConfig",
    "MemoryMessage",
    "MemoryStore",
    "SemanticRecallOptions",
    "SimilarMessage",
    "SqlMemoryStore",
    "WorkingMemoryConfig",
    "WorkingMemoryManager",
    "WorkingMemoryMode",
    "WorkingMemoryRecord",
    "WorkingMemoryScope",
    "cosine_similarity",
    "load_history",
    "merge_messages",
]
