"""System health snapshots and the periodic health sweep."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from mcp_core.core.models import HealthStatus, SystemHealthSnapshot, isoformat_now, utc_now
from mcp_core.core.protocol import MCP_AGENT_ID

if TYPE_CHECKING:
    from mcp_core.orchestration.coordinator import Coordinator

logger = logging.getLogger(__name__)


class HealthAggregator:
    """Rolls per-agent metrics up into a :class:`SystemHealthSnapshot`."""

    def __init__(self, coordinator: Coordinator) -> None:
        self._coordinator = coordinator
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None

    def get_system_status(self) -> SystemHealthSnapshot:
        coordinator = self._coordinator
        handles = coordinator.list_handles()

        components: Dict[str, HealthStatus] = {MCP_AGENT_ID: coordinator.status}
        issues: List[str] = []
        if coordinator.status is not HealthStatus.HEALTHY:
            issues.append(f"MCP status: {coordinator.status.value}")

        for handle in handles:
            metrics = handle.metrics
            components[handle.agent_id] = metrics.health_status
            if metrics.health_status is not HealthStatus.HEALTHY:
                issues.append(f"Agent {handle.agent_id} status: {metrics.health_status.value}")
            threshold = coordinator.config.agent_config(handle.agent_type).performance_threshold
            if metrics.success_rate < threshold:
                issues.append(
                    f"Agent {handle.agent_id} success rate {metrics.success_rate:.2f} "
                    f"below threshold {threshold:.2f}"
                )

        timings = [h.metrics.average_processing_time for h in handles if h.metrics.average_processing_time > 0]
        processed = coordinator.messages_processed
        return SystemHealthSnapshot(
            status=HealthStatus.worst(list(components.values())),
            timestamp=isoformat_now(),
            components=components,
            metrics={
                "totalAgents": len(handles),
                "activeAgents": sum(
                    1 for h in handles if h.metrics.health_status is not HealthStatus.ERROR
                ),
                "replayBufferSize": coordinator.replay_buffer.size(),
                "messagesProcessed": processed,
                "errorRate": coordinator.error_messages / processed if processed else 0.0,
                "averageResponseTime": sum(timings) / len(timings) if timings else 0.0,
                "trainingRuns": coordinator.training_runs,
                "uptime": (utc_now() - coordinator.start_time).total_seconds(),
            },
            issues=issues,
        )

    def perform_health_check(self) -> SystemHealthSnapshot:
        """Poll every agent, refresh its status and announce the resulting snapshot.

        An ``error`` status set by an operator is left alone; every other status
        follows the agent's own health probe.
        """
        coordinator = self._coordinator
        for handle in coordinator.list_handles():
            healthy = coordinator.is_healthy(handle.agent_id)
            if not healthy:
                logger.warning("Agent %s failed its health check", handle.agent_id)
            if handle.metrics.health_status is HealthStatus.ERROR:
                continue
            handle.metrics.health_status = HealthStatus.HEALTHY if healthy else HealthStatus.DEGRADED
            handle.metrics.touch()

        snapshot = self.get_system_status()
        if snapshot.issues:
            logger.warning("Health check found %d issue(s): %s", len(snapshot.issues), snapshot.issues)
        else:
            logger.info("Health check passed for %d agents", snapshot.metrics["totalAgents"])
        coordinator.emit_system_event("health_check", snapshot.to_dict())
        return snapshot

    # Periodic sweep

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(interval, self._stop_event))

    async def stop(self) -> None:
        if self._task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        await self._task
        self._task = None
        self._stop_event = None

    async def _run(self, interval: float, stop_event: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                self._coordinator.perform_periodic_tasks()
            except Exception:  # noqa: BLE001
                logger.exception("Periodic health sweep failed")
