"""Agent registry: routes event names to the agent that owns them."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from agent_telemetry.agents.acp import ACPAgent
from agent_telemetry.agents.base import BaseAgent, event_name_of
from agent_telemetry.agents.claude import ClaudeAgent
from agent_telemetry.agents.codex import CodexAgent
from agent_telemetry.agents.copilot import CopilotAgent
from agent_telemetry.agents.gemini import GeminiAgent
from agent_telemetry.agents.junie import JunieAgent

if TYPE_CHECKING:
    from agent_telemetry.agents.events import NormalizedEvent
    from agent_telemetry.session import Session

logger = logging.getLogger(__name__)

# Detection order. ACP's generic llm.* / tool.* namespaces go last so the
# vendor-specific agents always win.
DEFAULT_AGENTS: tuple[type[BaseAgent], ...] = (
    ClaudeAgent,
    CodexAgent,
    GeminiAgent,
    JunieAgent,
    CopilotAgent,
    ACPAgent,
)


class AgentRegistry:
    """Ordered collection of agents; the first agent that claims an event wins."""

    def __init__(self, agents: list[BaseAgent] | None = None) -> None:
        self._agents: dict[str, BaseAgent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: BaseAgent) -> None:
        if not agent.name:
            raise ValueError(f"Agent {type(agent).__name__} must define a name")
        if agent.name in self._agents:
            logger.warning(f"Replacing registered agent '{agent.name}'")
        self._agents[agent.name] = agent
        logger.debug(f"Registered agent {agent.name} ({agent.event_prefix}*)")

    def unregister(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    def get(self, name: str) -> BaseAgent | None:
        return self._agents.get(name)

    @property
    def agents(self) -> list[BaseAgent]:
        return list(self._agents.values())

    @property
    def names(self) -> list[str]:
        return list(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def detect(self, event_name: str | None) -> BaseAgent | None:
        if not event_name:
            return None
        for agent in self._agents.values():
            if agent.can_handle(event_name):
                return agent
        return None

    def extract_session_id(
        self, attrs: Mapping[str, Any], event_name: str | None
    ) -> tuple[str | None, BaseAgent | None]:
        """Session id according to whichever agent owns ``event_name``."""
        agent = self.detect(event_name)
        if agent is None:
            return None, None
        return agent.extract_session_id(attrs), agent

    def translate(
        self,
        record: Mapping[str, Any],
        attrs: Mapping[str, Any],
        session: Session | None = None,
    ) -> tuple[NormalizedEvent | None, BaseAgent | None]:
        event_name = event_name_of(record)
        agent = self.detect(event_name)
        if agent is None:
            logger.debug(f"No agent found for event {event_name!r}")
            return None, None
        return agent.translate(record, attrs, session), agent

    def summary(self) -> dict[str, Any]:
        return {
            "count": len(self._agents),
            "agents": {name: agent.summary() for name, agent in self._agents.items()},
        }


def default_registry() -> AgentRegistry:
    """Registry with every built-in agent in detection order."""
    return AgentRegistry([agent_cls() for agent_cls in DEFAULT_AGENTS])
