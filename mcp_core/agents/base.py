"""Base agent definition driven by the coordinator."""
from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from mcp_core.config import AgentTypeConfig
from mcp_core.core.exceptions import AgentTimeoutError, UnknownCommandError
from mcp_core.core.models import (
    AgentMessage,
    AgentState,
    AgentType,
    ErrorCode,
    EventType,
    Experience,
    MessagePriority,
    utc_now,
)
from mcp_core.core.protocol import MCP_AGENT_ID, create_message, validate_message

logger = logging.getLogger(__name__)

OutboundCallback = Callable[[AgentMessage], Awaitable[None]]

_PROCESSING_WINDOW = 100


class Agent(abc.ABC):
    """Abstract agent encapsulating lifecycle hooks, business logic and reporting."""

    agent_type: AgentType
    capabilities: Iterable[str] = ()

    def __init__(
        self,
        agent_id: str,
        config: Optional[AgentTypeConfig] = None,
        *,
        inbox_size: int = 0,
    ) -> None:
        self.agent_id = agent_id
        self.config = config or AgentTypeConfig()
        self.state = AgentState.SPAWNING
        self.last_error: Optional[str] = None
        self.inbox: asyncio.Queue[AgentMessage] = asyncio.Queue(maxsize=inbox_size)
        self.requests_processed = 0
        self.errors_encountered = 0
        self.consecutive_failures = 0
        self.start_time = utc_now()
        self.last_activity_time = self.start_time
        self._processing_times: Deque[float] = deque(maxlen=_PROCESSING_WINDOW)
        self._outbound: Optional[OutboundCallback] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()

    def get_capabilities(self) -> List[str]:
        return [str(getattr(cap, "value", cap)) for cap in self.capabilities]

    # Business surface invoked by the coordinator

    @abc.abstractmethod
    async def process_request(self, parameters: Dict[str, Any]) -> Any:
        """Run the agent's domain computation."""

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        """Call :meth:`process_request` with this agent type's timeout and retry budget."""
        attempts = max(0, self.config.max_retries) + 1
        timeout = self.config.timeout_ms / 1000 if self.config.timeout_ms > 0 else None
        last_exc: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(self.process_request(parameters), timeout=timeout)
            except asyncio.TimeoutError:
                last_exc = AgentTimeoutError(
                    f"{self.agent_id} timed out after {self.config.timeout_ms} ms"
                )
            except UnknownCommandError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
            else:
                self._record_success((time.perf_counter() - started) * 1000)
                return result

            self._record_failure(last_exc)
            logger.warning(
                "Agent %s attempt %d/%d failed: %s", self.agent_id, attempt, attempts, last_exc
            )

        assert last_exc is not None
        raise last_exc

    async def handle_command(self, command_name: str, parameters: Dict[str, Any]) -> Any:
        """Commands other than ``process_request``; none are supported by default."""
        raise UnknownCommandError(f"Agent {self.agent_id} does not support command '{command_name}'")

    async def handle_help_request(self, help_request: Dict[str, Any], requesting_agent_id: str) -> None:
        logger.warning(
            "Agent %s cannot handle help request from %s", self.agent_id, requesting_agent_id
        )

    async def learn(self, experiences: List[Experience]) -> None:
        logger.info("Agent %s received %d experiences for learning", self.agent_id, len(experiences))

    def is_healthy(self) -> bool:
        if self.state in (AgentState.FAILED, AgentState.STOPPED):
            return False
        return self.consecutive_failures <= self.config.max_retries

    def get_metrics(self) -> Dict[str, Any]:
        times = list(self._processing_times)
        return {
            "agentId": self.agent_id,
            "agentType": self.agent_type.value,
            "uptime": (utc_now() - self.start_time).total_seconds(),
            "requestsProcessed": self.requests_processed,
            "errorsEncountered": self.errors_encountered,
            "errorRate": (
                self.errors_encountered / self.requests_processed if self.requests_processed else 0.0
            ),
            "averageProcessingTime": sum(times) / len(times) if times else 0.0,
            "isHealthy": self.is_healthy(),
            "lastActivityTime": self.last_activity_time.isoformat(),
        }

    def _record_success(self, elapsed_ms: float) -> None:
        self.requests_processed += 1
        self.consecutive_failures = 0
        self.last_activity_time = utc_now()
        self._processing_times.append(elapsed_ms)

    def _record_failure(self, exc: BaseException) -> None:
        self.requests_processed += 1
        self.errors_encountered += 1
        self.consecutive_failures += 1
        self.last_error = str(exc)
        self.last_activity_time = utc_now()

    # Messaging

    def set_message_bus_callback(self, callback: Optional[OutboundCallback]) -> None:
        self._outbound = callback

    def deliver(self, message: AgentMessage) -> None:
        """Delivery callback used by the coordinator; raises ``asyncio.QueueFull`` when saturated."""
        self.inbox.put_nowait(message)

    async def send_message(self, message: AgentMessage) -> bool:
        """Validate and hand an envelope to the coordinator."""
        result = validate_message(message)
        if not result.valid:
            logger.error("Agent %s produced an invalid message: %s", self.agent_id, result.errors)
            return False
        if self._outbound is None:
            logger.warning(
                "Agent %s attempted to send a message but is not attached to a coordinator",
                self.agent_id,
            )
            return False
        await self._outbound(message)
        return True

    async def request_help(
        self,
        problem_description: str,
        task_id: str,
        failed_attempts: int = 1,
        last_error: Optional[str] = None,
        context_data: Any = None,
    ) -> bool:
        message = create_message(
            self.agent_id,
            MCP_AGENT_ID,
            EventType.ASSISTANCE_REQUESTED,
            {
                "problemDescription": problem_description,
                "taskId": task_id,
                "failedAttempts": failed_attempts,
                "lastError": last_error,
                "contextData": context_data,
            },
            metadata={"priority": MessagePriority.HIGH.value},
        )
        return await self.send_message(message)

    async def report_result(
        self,
        result: Any,
        processing_time_ms: float,
        notes: Optional[List[str]] = None,
        correlation_id: Optional[str] = None,
        confidence_score: Optional[float] = None,
    ) -> bool:
        self._record_success(processing_time_ms)
        metadata: Dict[str, Any] = {"processingTime": processing_time_ms}
        if confidence_score is not None:
            metadata["confidenceScore"] = confidence_score
        message = create_message(
            self.agent_id,
            MCP_AGENT_ID,
            EventType.RESPONSE,
            {
                "status": "success",
                "result": result,
                "processingTimeMs": processing_time_ms,
                "notes": notes,
            },
            correlation_id=correlation_id,
            metadata=metadata,
        )
        return await self.send_message(message)

    async def report_error(
        self,
        error: BaseException,
        task_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        self._record_failure(error)
        message = create_message(
            self.agent_id,
            MCP_AGENT_ID,
            EventType.ERROR,
            {
                "errorCode": ErrorCode.PROCESSING_ERROR.value,
                "errorMessage": str(error),
                "details": {"taskId": task_id, "type": type(error).__name__},
            },
            correlation_id=correlation_id,
            metadata={"priority": MessagePriority.HIGH.value},
        )
        return await self.send_message(message)

    async def send_status_update(self) -> bool:
        metrics = self.get_metrics()
        message = create_message(
            self.agent_id,
            MCP_AGENT_ID,
            EventType.STATUS_UPDATE,
            {
                "status": "healthy" if self.is_healthy() else "degraded",
                "metrics": {
                    "requestsProcessed": metrics["requestsProcessed"],
                    "errorsEncountered": metrics["errorsEncountered"],
                    "errorRate": metrics["errorRate"],
                    "averageProcessingTime": metrics["averageProcessingTime"],
                },
            },
        )
        return await self.send_message(message)

    # Lifecycle

    async def start(self) -> None:
        """Start the agent's inbox loop."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe())
        await self._started_event.wait()

    async def stop(self) -> None:
        """Signal the agent to stop and wait for completion."""
        if self._runner is None:
            return
        self.state = AgentState.STOPPING
        self._stop_event.set()
        await self._runner
        self._runner = None

    async def _run_safe(self) -> None:
        """Wrap the main loop to handle exceptions gracefully."""
        try:
            self.state = AgentState.RUNNING
            self._started_event.set()
            await self.on_start()
            while not self._stop_event.is_set():
                try:
                    message = await asyncio.wait_for(self.inbox.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    await self.on_idle()
                    continue
                await self.handle_message(message)
        except Exception as exc:  # noqa: BLE001
            self.state = AgentState.FAILED
            self.last_error = str(exc)
            logger.exception("Agent %s loop failed", self.agent_id)
            self._started_event.set()
        else:
            self.state = AgentState.STOPPED
            self._started_event.set()
        finally:
            await self.on_stop()

    async def handle_message(self, message: AgentMessage) -> None:
        """Process an envelope delivered to this agent's inbox."""
        logger.debug(
            "Agent %s received %s from %s",
            self.agent_id,
            message.event_type.value,
            message.source_agent_id,
        )

    async def on_start(self) -> None:
        """Hook executed once the agent loop begins."""
        return None

    async def on_stop(self) -> None:
        """Hook executed when the agent loop exits."""
        return None

    async def on_idle(self) -> None:
        """Hook invoked when no messages were received during the idle window."""
        return None
