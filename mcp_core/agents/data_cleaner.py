"""Data quality agent for income records."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

from mcp_core.agents.base import Agent
from mcp_core.core.models import AgentType, Capability

logger = logging.getLogger(__name__)

DUPLICATE_AMOUNT_TOLERANCE = 0.05


class DataCleanerAgent(Agent):
    agent_type = AgentType.DATA_CLEANER
    capabilities = (Capability.DATA_VALIDATION, Capability.DUPLICATE_DETECTION)

    async def process_request(self, parameters: Dict[str, Any]) -> Any:
        return self.analyze_income_data(parameters.get("incomes", []))

    async def handle_help_request(self, help_request: Dict[str, Any], requesting_agent_id: str) -> None:
        context = help_request.get("contextData") or {}
        report = self.analyze_income_data(context.get("incomes", []))
        logger.info(
            "Agent %s reviewed data for %s: quality score %s",
            self.agent_id,
            requesting_agent_id,
            report["dataQualityScore"],
        )

    def analyze_income_data(self, incomes: List[Dict[str, Any]]) -> Dict[str, Any]:
        issues: List[Dict[str, Any]] = []

        missing = [income["id"] for income in incomes if not str(income.get("description") or "").strip()]
        if missing:
            issues.append({"type": "missing_data", "affectedIds": missing})

        duplicates = self.find_potential_duplicates(incomes)
        if duplicates:
            issues.append(
                {"type": "potential_duplicates", "affectedIds": [i for group in duplicates for i in group]}
            )

        affected: Set[Any] = {record_id for issue in issues for record_id in issue["affectedIds"]}
        score = 100 if not incomes else round(100 - len(affected) / len(incomes) * 100)
        return {
            "totalIncomeEntries": len(incomes),
            "issues": issues,
            "duplicateGroups": duplicates,
            "dataQualityScore": score,
        }

    @staticmethod
    def find_potential_duplicates(incomes: List[Dict[str, Any]]) -> List[List[Any]]:
        """Group records with the same source and frequency and amounts within 5%."""
        groups: List[List[Any]] = []
        seen: Set[Any] = set()
        for index, current in enumerate(incomes):
            if current["id"] in seen:
                continue
            amount = float(current["amount"])
            group = [current["id"]]
            for other in incomes[index + 1 :]:
                if (
                    other["id"] not in seen
                    and other.get("source") == current.get("source")
                    and other.get("frequency") == current.get("frequency")
                    and abs(float(other["amount"]) - amount) < amount * DUPLICATE_AMOUNT_TOLERANCE
                ):
                    group.append(other["id"])
                    seen.add(other["id"])
            seen.add(current["id"])
            if len(group) > 1:
                groups.append(group)
        return groups
