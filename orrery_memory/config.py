"""Per-agent memory wiring."""
from dataclasses import dataclass

from orrery_memory.recall import SemanticRecallOptions
from orrery_memory.store import MemoryStore
from orrery_memory.working_memory import WorkingMemoryConfig, WorkingMemoryManager


@dataclass
class MemoryConfig:
    """
    How an agent reads and writes memory.

    Args:
        store: Backing MemoryStore (shared between agents is fine).
        history_limit: Recent messages loaded before the first model call
            (None uses ``EngineConfig.history_limit``).
        semantic: Semantic recall options; ignored when the store cannot search.
        working_memory: Scratchpad configuration; None disables it.
        persist: Write the input and final answer back after completion.
    """
    store: MemoryStore
    history_limit: int | None = None
    semantic: SemanticRecallOptions | None = None
    working_memory: WorkingMemoryConfig | None = None
    persist: bool = True

    def working_memory_manager(self) -> WorkingMemoryManager | None:
        if self.working_memory is None or not self.working_memory.enabled:
            return None
        return WorkingMemoryManager(self.store, self.working_memory)
