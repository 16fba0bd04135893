"""
AgentRegistry — explicit name → Agent lookup owned by the application root.

There is no process-wide registry; create one per runtime (or per test) and
pass it where discovery is needed.
"""
import logging
from typing import Iterator

from orrery_agents.base import Agent
from orrery_engine.exceptions import ConfigurationError

logger = logging.getLogger("orrery.agents.registry")


class AgentRegistry:
    """Holds top-level agents and, transitively, their sub-agents."""

    def __init__(self, agents: list[Agent] | None = None):
        self._agents: dict[str, Agent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent, include_sub_agents: bool = True) -> None:
        """
        Add ``agent`` (and by default every agent it can reach).

        Names are global handles: registering a *different* agent under an
        existing name raises ConfigurationError.
        """
        candidates = [agent, *agent.descendants()] if include_sub_agents else [agent]
        for a in candidates:
            existing = self._agents.get(a.name)
            if existing is not None and existing is not a:
                raise ConfigurationError(f"Agent name already registered: {a.name}")
        for a in candidates:
            self._agents[a.name] = a
        logger.debug("Registered %d agent(s) under %s", len(candidates), agent.name)

    def unregister(self, name: str) -> Agent | None:
        return self._agents.pop(name, None)

    def get(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def require(self, name: str) -> Agent:
        agent = self._agents.get(name)
        if agent is None:
            raise KeyError(f"Unknown agent: {name}. Registered: {', '.join(self._agents) or 'none'}")
        return agent

    def list_agents(self) -> list[dict[str, object]]:
        """Summary rows (for debugging / admin surfaces)."""
        return [
            {
                "name": a.name,
                "purpose": a.purpose[:100],
                "tools": a.tools.names,
                "sub_agents": [s.name for s in a.sub_agents],
                "max_steps": a.max_steps,
            }
            for a in self._agents.values()
        ]

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)
