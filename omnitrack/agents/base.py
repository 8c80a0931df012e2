from __future__ import annotations

from typing import Iterable, Mapping, Protocol

from ..schemas.agents import AgentKind, AgentResult, ScenarioInput


class BaseAgent(Protocol):
    """Uniform adapter every analytical agent implements; its reasoning is opaque."""

    agent_id: str
    kind: AgentKind

    async def analyze(self, scenario_input: ScenarioInput) -> AgentResult:
        ...


def index_agents(agents: Iterable[BaseAgent] | Mapping[AgentKind, BaseAgent]) -> dict[AgentKind, BaseAgent]:
    """Key agents by kind, rejecting two agents registered for the same kind."""
    if isinstance(agents, Mapping):
        candidates = list(agents.values())
    else:
        candidates = list(agents)
    indexed: dict[AgentKind, BaseAgent] = {}
    for agent in candidates:
        kind = AgentKind(agent.kind)
        if kind in indexed:
            raise ValueError(f"duplicate agent registered for kind '{kind.value}'")
        indexed[kind] = agent
    return indexed
