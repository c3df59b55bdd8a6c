"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache
from typing import List

from mcp_core.agents.base import Agent
from mcp_core.agents.data_cleaner import DataCleanerAgent
from mcp_core.agents.reporting import ReportingAgent
from mcp_core.agents.valuation import ValuationAgent
from mcp_core.config import CoordinatorConfig, config
from mcp_core.orchestration.coordinator import Coordinator

_AGENT_CATALOG = {
    "valuation-agent": ValuationAgent,
    "data-cleaner-agent": DataCleanerAgent,
    "reporting-agent": ReportingAgent,
}


def build_default_agents(settings: CoordinatorConfig) -> List[Agent]:
    return [
        agent_cls(agent_id, settings.agent_config(agent_cls.agent_type))
        for agent_id, agent_cls in _AGENT_CATALOG.items()
    ]


def build_coordinator(settings: CoordinatorConfig = config) -> Coordinator:
    """Create a coordinator and register every enabled default agent."""
    coordinator = Coordinator(settings)
    for agent in build_default_agents(settings):
        coordinator.register_agent(agent)
    return coordinator


@lru_cache
def get_coordinator() -> Coordinator:
    return build_coordinator()
