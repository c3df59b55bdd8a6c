"""Income analysis and valuation agent."""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List

from mcp_core.agents.base import Agent
from mcp_core.core.exceptions import AgentExecutionError
from mcp_core.core.models import AgentType, Capability, ErrorCode

# Monthly conversion factors by income frequency.
_MONTHLY_FACTORS = {
    "daily": 30.0,
    "weekly": 4.33,
    "biweekly": 2.17,
    "monthly": 1.0,
    "quarterly": 1 / 3,
    "yearly": 1 / 12,
    "annually": 1 / 12,
}

ANOMALY_PERCENT_CHANGE = 20.0


class ValuationAgent(Agent):
    """Summarises income records and derives an income-multiplier valuation."""

    agent_type = AgentType.VALUATION
    capabilities = (
        Capability.INCOME_ANALYSIS,
        Capability.VALUATION_CALCULATION,
        Capability.ANOMALY_DETECTION,
    )

    base_multiplier = 4.2

    async def process_request(self, parameters: Dict[str, Any]) -> Any:
        task = parameters.get("task", "analyze_income")
        if task == "analyze_income":
            return self.analyze_income(parameters.get("incomes", []))
        if task == "detect_anomalies":
            return self.detect_anomalies(parameters.get("valuations", []))
        raise AgentExecutionError(
            f"Unsupported valuation task '{task}'", error_code=ErrorCode.VALIDATION_ERROR
        )

    def analyze_income(self, incomes: List[Dict[str, Any]]) -> Dict[str, Any]:
        monthly_total = sum(
            float(income["amount"]) * _MONTHLY_FACTORS.get(income.get("frequency", "monthly"), 1.0)
            for income in incomes
        )
        sources = Counter(income.get("source", "other") for income in incomes)
        annual_income = monthly_total * 12
        return {
            "totalMonthlyIncome": round(monthly_total, 2),
            "annualIncome": round(annual_income, 2),
            "multiplier": self.base_multiplier,
            "valuationAmount": round(annual_income * self.base_multiplier, 2),
            "sourceCount": len(sources),
            "mostCommonSource": sources.most_common(1)[0][0] if sources else None,
        }

    def detect_anomalies(self, valuations: List[Dict[str, Any]]) -> Dict[str, Any]:
        ordered = sorted(valuations, key=lambda item: item["createdAt"])
        anomalies = []
        for previous, current in zip(ordered, ordered[1:]):
            before = float(previous["valuationAmount"])
            after = float(current["valuationAmount"])
            if before == 0:
                continue
            change = (after - before) / before * 100
            if abs(change) > ANOMALY_PERCENT_CHANGE:
                anomalies.append(
                    {
                        "from": previous["createdAt"],
                        "to": current["createdAt"],
                        "percentChange": round(change, 1),
                        "severity": "high" if abs(change) > 50 else "medium" if abs(change) > 30 else "low",
                    }
                )
        return {"anomalies": anomalies, "checked": max(len(ordered) - 1, 0)}
