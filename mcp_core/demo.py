"""CLI demonstration of coordinator-managed agents."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from mcp_core.config import TrainingConfig, config
from mcp_core.core.models import AgentMessage, EventType
from mcp_core.runtime import build_coordinator

SAMPLE_INCOMES = [
    {"id": 1, "source": "rental", "amount": 2500, "frequency": "monthly", "description": "Unit A"},
    {"id": 2, "source": "rental", "amount": 2450, "frequency": "monthly", "description": ""},
    {"id": 3, "source": "business", "amount": 30000, "frequency": "yearly", "description": "Shop"},
]


async def main() -> None:
    settings = replace(config, training=TrainingConfig(trigger_threshold=3, sample_size=10))
    coordinator = build_coordinator(settings)

    def show(message: AgentMessage) -> None:
        print(f"[{message.event_type.value}] {message.source_agent_id} -> {message.target_agent_id}")

    coordinator.add_message_listener(show)
    coordinator.subscribe(
        "training_triggered",
        lambda event: print(f"Training triggered: {event.payload['experienceCount']} experiences"),
    )
    await coordinator.start()

    reply = await coordinator.request_agent("valuation-agent", {"incomes": SAMPLE_INCOMES})
    if reply is not None:
        print(f"Valuation result: {reply.payload['result']}")

    reply = await coordinator.request_agent("data-cleaner-agent", {"incomes": SAMPLE_INCOMES})
    if reply is not None:
        print(f"Data quality score: {reply.payload['result']['dataQualityScore']}")

    reply = await coordinator.request_agent("valuation-agent", {"task": "forecast"})
    if reply is not None and reply.event_type is EventType.ERROR:
        print(f"Expected failure: {reply.payload['errorMessage']}")

    reporter = coordinator.get_agent("reporting-agent")
    if reporter is not None:
        await reporter.request_help(
            "Possible duplicate entries in the imported records",
            task_id="demo-1",
            context_data={"incomes": SAMPLE_INCOMES},
        )

    await coordinator.wait_for_background_tasks()
    snapshot = coordinator.perform_health_check()
    print(f"System status: {snapshot.status.value}, issues: {snapshot.issues or 'none'}")
    await coordinator.shutdown()


def run() -> None:
    logging.basicConfig(level=config.log_level)
    asyncio.run(main())


if __name__ == "__main__":
    run()
