"""Reporting agent producing valuation summaries."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from mcp_core.agents.base import Agent
from mcp_core.core.models import AgentType, Capability, Experience

logger = logging.getLogger(__name__)


class ReportingAgent(Agent):
    agent_type = AgentType.REPORTING
    capabilities = (
        Capability.REPORT_GENERATION,
        Capability.INSIGHT_GENERATION,
        Capability.SUMMARY_GENERATION,
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.lessons: List[str] = []

    async def process_request(self, parameters: Dict[str, Any]) -> Any:
        return self.generate_summary(parameters.get("valuations", []))

    def generate_summary(self, valuations: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not valuations:
            return {"summary": "No valuations recorded yet.", "insights": []}

        ordered = sorted(valuations, key=lambda item: item["createdAt"])
        first = float(ordered[0]["valuationAmount"])
        latest = float(ordered[-1]["valuationAmount"])
        growth = (latest - first) / first * 100 if first else 0.0

        insights = [f"{len(ordered)} valuations recorded"]
        if growth > 0:
            insights.append(f"Valuation grew {growth:.1f}% since the first assessment")
        elif growth < 0:
            insights.append(f"Valuation declined {abs(growth):.1f}% since the first assessment")
        return {
            "summary": f"Latest valuation is ${latest:,.2f}",
            "latestValuation": latest,
            "growthPercent": round(growth, 1),
            "insights": insights,
        }

    async def learn(self, experiences: List[Experience]) -> None:
        failures = [exp for exp in experiences if exp.reward_signal < 0]
        if failures:
            self.lessons.append(f"{len(failures)} of {len(experiences)} recent outcomes were negative")
        await super().learn(experiences)
