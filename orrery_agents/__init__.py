# orrery_agents/__init__.py
"""
Orrery Agents Package

Agent descriptors, sub-agent wiring and the explicit agent registry.
"""

from orrery_agents.base import Agent
from orrery_agents.registry import AgentRegistry
from orrery_engine.results import AgentResult, FinishReason, LoopState
from orrery_engine.step_loop import AgentEngine

__all__ = [
    "Agent",
    "AgentEngine",
    "AgentRegistry",
    "AgentResult",
    "FinishReason",
    "LoopState",
]
