"""Central coordinator: agent registry, message routing, experience logging and training."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set, Union

from mcp_core.agents.base import Agent
from mcp_core.config import CoordinatorConfig
from mcp_core.core.exceptions import (
    AgentNotFoundError,
    CoordinationError,
    UnknownCommandError,
    error_code_for,
)
from mcp_core.core.message_bus import MESSAGE_EVENT, MessageBus, MessageListener
from mcp_core.core.models import (
    AgentHandle,
    AgentMessage,
    AgentType,
    ErrorCode,
    EventType,
    Experience,
    HealthStatus,
    SystemHealthSnapshot,
    utc_now,
)
from mcp_core.core.protocol import (
    BROADCAST,
    MCP_AGENT_ID,
    SYSTEM_TARGET,
    create_error_message,
    create_experience,
    create_message,
    create_response,
    validate_message,
)
from mcp_core.core.replay_buffer import ReplayBuffer, create_replay_buffer
from mcp_core.orchestration.health import HealthAggregator

logger = logging.getLogger(__name__)

RESERVED_AGENT_IDS = frozenset({MCP_AGENT_ID, BROADCAST, SYSTEM_TARGET})

# Reward signals per outcome
REWARD_SUCCESS = 1.0
REWARD_FAILED_RESPONSE = -0.5
REWARD_ERROR = -1.0
REWARD_ASSISTANCE = -0.2

# Experience priorities
PRIORITY_ERROR = 0.9
PRIORITY_ASSISTANCE = 0.8
PRIORITY_UNUSUAL_RESPONSE = 0.7
PRIORITY_RESPONSE = 0.5
PRIORITY_OTHER = 0.3

LOW_CONFIDENCE_SCORE = 50

_EXPERIENCE_EVENTS = frozenset(
    {EventType.RESPONSE, EventType.ERROR, EventType.ASSISTANCE_REQUESTED}
)

_THROTTLE_WINDOW = 1.0

MessageHandler = Callable[[AgentMessage], Awaitable[None]]


class Coordinator:
    """Single coordinator owning the agent registry and all routing decisions.

    Every inbound envelope goes through :meth:`handle_message`: it is validated,
    checked for expiry, recorded as an experience when it describes an outcome,
    announced to listeners and then dispatched by event type. Agents never talk
    to each other directly; replies and forwards are delivered through the
    per-agent delivery callback registered with the handle.
    """

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        *,
        replay_buffer: Optional[ReplayBuffer] = None,
        bus: Optional[MessageBus] = None,
        rng: Any = None,
    ) -> None:
        self.config = config or CoordinatorConfig()
        self.agent_id = MCP_AGENT_ID
        self.replay_buffer = replay_buffer or create_replay_buffer(self.config.replay_buffer, rng=rng)
        self.bus = bus or MessageBus()
        self.health = HealthAggregator(self)
        self.status = HealthStatus.HEALTHY
        self.start_time = utc_now()
        self.messages_processed = 0
        self.error_messages = 0
        self.training_runs = 0
        self._agents_running = False
        self._handles: Dict[str, AgentHandle] = {}
        self._registration_counter = itertools.count()
        self._throttle: Dict[str, Deque[float]] = defaultdict(deque)
        self._background: Set[asyncio.Task[Any]] = set()
        self._handlers: Dict[EventType, MessageHandler] = {
            EventType.COMMAND: self._handle_command,
            EventType.RESPONSE: self._handle_response,
            EventType.ERROR: self._handle_error,
            EventType.STATUS_UPDATE: self._handle_status_update,
            EventType.ASSISTANCE_REQUESTED: self._handle_assistance_request,
        }
        logger.info(
            "Coordinator initialised for %s v%s (%s)",
            self.config.system_name,
            self.config.version,
            self.config.environment,
        )

    # Registry

    def register_agent(self, agent: Agent) -> bool:
        """Attach ``agent``; returns False when the registration is refused."""
        agent_id = agent.agent_id
        if agent_id in RESERVED_AGENT_IDS:
            logger.warning("Agent id %s is reserved", agent_id)
            return False
        if agent_id in self._handles:
            logger.warning("Agent with ID %s is already registered", agent_id)
            return False
        if len(self._handles) >= self.config.max_agents:
            logger.warning(
                "Cannot register %s: maximum of %d agents reached", agent_id, self.config.max_agents
            )
            return False
        if not self.config.agent_config(agent.agent_type).enabled:
            logger.warning("Agent type %s is disabled, refusing %s", agent.agent_type.value, agent_id)
            return False

        handle = AgentHandle(
            agent_id=agent_id,
            agent_type=agent.agent_type,
            capabilities=frozenset(agent.get_capabilities()),
            delivery_callback=agent.deliver,
            agent=agent,
            registration_index=next(self._registration_counter),
        )
        agent.set_message_bus_callback(self.handle_message)
        self._handles[agent_id] = handle
        if self._agents_running:
            self._spawn(agent.start(), f"start of {agent_id}")
        logger.info(
            "Registered agent %s (%s) with capabilities %s",
            agent_id,
            agent.agent_type.value,
            sorted(handle.capabilities),
        )
        self.emit_system_event(
            "agent_registered",
            {
                "agentId": agent_id,
                "agentType": agent.agent_type.value,
                "capabilities": sorted(handle.capabilities),
            },
        )
        return True

    def unregister_agent(self, agent_id: str) -> bool:
        handle = self._handles.pop(agent_id, None)
        if handle is None:
            logger.warning("Cannot unregister unknown agent %s", agent_id)
            return False
        handle.agent.set_message_bus_callback(None)
        if self._agents_running:
            self._spawn(handle.agent.stop(), f"stop of {agent_id}")
        self._throttle.pop(agent_id, None)
        logger.info("Unregistered agent %s", agent_id)
        self.emit_system_event("agent_unregistered", {"agentId": agent_id})
        return True

    def list_handles(self) -> List[AgentHandle]:
        return list(self._handles.values())

    def get_handle(self, agent_id: str) -> Optional[AgentHandle]:
        return self._handles.get(agent_id)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        handle = self._handles.get(agent_id)
        return handle.agent if handle else None

    def get_agents_by_type(self, agent_type: Union[AgentType, str]) -> List[Agent]:
        wanted = AgentType(agent_type)
        return [h.agent for h in self._handles.values() if h.agent_type is wanted]

    def find_agent_with_capability(self, capability: Any) -> Optional[str]:
        """Best-performing agent declaring ``capability``; earliest registration wins ties."""
        tag = str(getattr(capability, "value", capability))
        candidates = [h for h in self._handles.values() if tag in h.capabilities]
        if not candidates:
            return None
        best = max(candidates, key=lambda h: (h.metrics.success_rate, -h.registration_index))
        return best.agent_id

    def is_healthy(self, agent_id: str) -> bool:
        handle = self._handles.get(agent_id)
        if handle is None:
            return False
        try:
            return bool(handle.agent.is_healthy())
        except Exception:  # noqa: BLE001
            logger.exception("Health probe for agent %s raised", agent_id)
            return False

    def set_agent_health(self, agent_id: str, status: Union[HealthStatus, str]) -> bool:
        handle = self._handles.get(agent_id)
        if handle is None:
            return False
        handle.metrics.health_status = HealthStatus(status)
        handle.metrics.touch()
        logger.info("Agent %s health set to %s", agent_id, handle.metrics.health_status.value)
        return True

    def get_agent_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {agent_id: handle.to_dict() for agent_id, handle in self._handles.items()}

    # Listeners

    def add_message_listener(self, listener: MessageListener) -> None:
        self.bus.subscribe(MESSAGE_EVENT, listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        self.bus.unsubscribe(MESSAGE_EVENT, listener)

    def subscribe(self, event: str, listener: MessageListener) -> None:
        self.bus.subscribe(event, listener)

    def unsubscribe(self, event: str, listener: MessageListener) -> None:
        self.bus.unsubscribe(event, listener)

    def emit_system_event(self, name: str, details: Mapping[str, Any]) -> AgentMessage:
        """Announce a coordinator event on ``name`` and on the message channels."""
        event = create_message(
            MCP_AGENT_ID, SYSTEM_TARGET, EventType.EVENT, {"event": name, **details}
        )
        self.bus.publish(name, event)
        self.bus.publish_message(event)
        return event

    # Intake

    async def handle_message(self, message: Union[AgentMessage, Mapping[str, Any]]) -> None:
        """Entry point for every envelope sent to the coordinator. Never raises."""
        try:
            await self._process(message, internal=False)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Unhandled error while processing message %s",
                getattr(message, "message_id", None) or "<unknown>",
            )

    async def _process(self, message: Union[AgentMessage, Mapping[str, Any]], *, internal: bool) -> None:
        result = validate_message(message)
        if not result.valid:
            logger.error("Rejected invalid message: %s", "; ".join(result.errors))
            return
        if not isinstance(message, AgentMessage):
            message = AgentMessage.from_dict(dict(message))

        if not internal:
            if message.is_expired():
                logger.warning(
                    "Dropping expired message %s from %s", message.message_id, message.source_agent_id
                )
                return
            if self._is_throttled(message.source_agent_id):
                logger.warning(
                    "Throttled message %s from %s", message.message_id, message.source_agent_id
                )
                return

        self.messages_processed += 1
        if message.event_type is EventType.ERROR:
            self.error_messages += 1
        if self.config.log_messages:
            logger.debug(
                "Message %s: %s -> %s (%s)",
                message.message_id,
                message.source_agent_id,
                message.target_agent_id,
                message.event_type.value,
            )

        self.log_experience(message)
        self.bus.publish_message(message)

        handler = self._handlers.get(message.event_type)
        if handler is not None:
            await handler(message)

        # Replies synthesized during a dispatch are covered by the outer check.
        if not internal:
            self.check_and_trigger_training()

    def _is_throttled(self, source_agent_id: str) -> bool:
        if not self.config.throttle_requests:
            return False
        now = time.monotonic()
        window = self._throttle[source_agent_id]
        while window and now - window[0] >= _THROTTLE_WINDOW:
            window.popleft()
        if len(window) >= self.config.throttle_limit:
            return True
        window.append(now)
        return False

    # Experience accounting

    def calculate_reward_signal(self, message: AgentMessage) -> float:
        if message.event_type is EventType.RESPONSE:
            return REWARD_SUCCESS if message.payload_get("status") == "success" else REWARD_FAILED_RESPONSE
        if message.event_type is EventType.ERROR:
            return REWARD_ERROR
        if message.event_type is EventType.ASSISTANCE_REQUESTED:
            return REWARD_ASSISTANCE
        return 0.0

    def calculate_experience_priority(self, message: AgentMessage) -> float:
        if message.event_type is EventType.ERROR:
            return PRIORITY_ERROR
        if message.event_type is EventType.ASSISTANCE_REQUESTED:
            return PRIORITY_ASSISTANCE
        if message.event_type is not EventType.RESPONSE:
            return PRIORITY_OTHER

        processing_time = message.meta("processingTime")
        handle = self._handles.get(message.source_agent_id)
        if processing_time is not None and handle is not None:
            average = handle.metrics.average_processing_time
            if average > 0 and (
                float(processing_time) > 2 * average or float(processing_time) < 0.5 * average
            ):
                return PRIORITY_UNUSUAL_RESPONSE

        confidence = message.meta("confidenceScore")
        if confidence is not None and float(confidence) < LOW_CONFIDENCE_SCORE:
            return PRIORITY_UNUSUAL_RESPONSE
        return PRIORITY_RESPONSE

    def log_experience(self, message: AgentMessage) -> Optional[Experience]:
        """Record RESPONSE, ERROR and ASSISTANCE_REQUESTED envelopes in the replay buffer."""
        if message.event_type not in _EXPERIENCE_EVENTS:
            return None
        payload = message.payload if isinstance(message.payload, dict) else {}
        experience = create_experience(
            message.source_agent_id,
            payload.get("state"),
            payload.get("action"),
            payload["result"] if "result" in payload else message.payload,
            payload.get("nextState"),
            reward_signal=self.calculate_reward_signal(message),
            priority=self.calculate_experience_priority(message),
            experience_id=message.message_id,
            timestamp=message.timestamp,
            metadata={
                "messageType": message.event_type.value,
                "correlationId": message.correlation_id,
            },
        )
        self.replay_buffer.add(experience)
        return experience

    def get_replay_buffer_size(self) -> int:
        return self.replay_buffer.size()

    def sample_experiences(self, count: int, min_priority: Optional[float] = None) -> List[Experience]:
        return self.replay_buffer.sample(count, min_priority)

    # Dispatch

    async def _handle_command(self, message: AgentMessage) -> None:
        target = message.target_agent_id
        if target == MCP_AGENT_ID:
            self._handle_admin_command(message)
            return
        if target == BROADCAST:
            for handle in list(self._handles.values()):
                if handle.agent_id != message.source_agent_id:
                    self._deliver(handle, message)
            return
        handle = self._handles.get(target)
        if handle is None:
            logger.warning("Command %s targeted unknown agent %s", message.message_id, target)
            return
        await self._run_agent_command(handle, message)

    async def _run_agent_command(self, handle: AgentHandle, message: AgentMessage) -> None:
        """Invoke the agent for a COMMAND and feed its reply back through intake."""
        command_name = message.payload_get("commandName")
        parameters = message.payload_get("parameters") or {}
        timeout = self.config.message_timeout if self.config.message_timeout > 0 else None
        agent = handle.agent

        started = time.perf_counter()
        try:
            if command_name == "process_request":
                call = agent.execute(parameters)
            else:
                call = agent.handle_command(command_name, parameters)
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Agent %s did not answer command %s within %ss",
                handle.agent_id,
                command_name,
                self.config.message_timeout,
            )
            reply = create_error_message(
                message,
                ErrorCode.TIMEOUT_ERROR,
                f"Agent {handle.agent_id} did not answer within {self.config.message_timeout}s",
                {"command": command_name},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Agent %s failed command %s: %s", handle.agent_id, command_name, exc)
            reply = create_error_message(
                message, error_code_for(exc), str(exc), {"command": command_name}
            )
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000
            reply = create_response(
                message, "success", result, metadata={"processingTime": elapsed_ms}
            )
        await self._process(reply, internal=True)

    def _handle_admin_command(self, message: AgentMessage) -> None:
        command_name = message.payload_get("commandName")
        parameters = message.payload_get("parameters") or {}
        try:
            if command_name == "get_agent_metrics":
                result: Dict[str, Any] = {"metrics": self.get_agent_metrics()}
            elif command_name == "trigger_training":
                result = {"status": "training_triggered", **self.trigger_training()}
            elif command_name == "find_agent_with_capability":
                capability = parameters.get("capability")
                if not capability:
                    raise CoordinationError(
                        "Capability parameter is required", error_code=ErrorCode.VALIDATION_ERROR
                    )
                result = {"agentId": self.find_agent_with_capability(capability)}
            else:
                raise UnknownCommandError(f"Unknown MCP command: {command_name}")
        except Exception as exc:  # noqa: BLE001
            logger.warning("MCP command %s from %s failed: %s", command_name, message.source_agent_id, exc)
            self._send_outbound(create_error_message(message, ErrorCode.COMMAND_ERROR, str(exc)))
            return
        self._send_outbound(create_response(message, "success", result))

    async def _handle_response(self, message: AgentMessage) -> None:
        handle = self._handles.get(message.source_agent_id)
        if handle is not None:
            metrics = handle.metrics
            processing_time = message.meta("processingTime")
            if processing_time is not None:
                observed = float(processing_time)
                if metrics.timing_samples == 0:
                    metrics.average_processing_time = observed
                else:
                    alpha = self.config.smoothing_factor
                    metrics.average_processing_time = (
                        alpha * observed + (1 - alpha) * metrics.average_processing_time
                    )
                metrics.timing_samples += 1
            if message.payload_get("status") == "success":
                metrics.success_rate = round(
                    min(1.0, metrics.success_rate + self.config.success_reward), 6
                )
            metrics.touch()
        self._forward(message)

    async def _handle_error(self, message: AgentMessage) -> None:
        logger.error(
            "Agent %s reported error %s: %s",
            message.source_agent_id,
            message.payload_get("errorCode"),
            message.payload_get("errorMessage"),
        )
        handle = self._handles.get(message.source_agent_id)
        if handle is not None:
            metrics = handle.metrics
            metrics.error_count += 1
            metrics.success_rate = round(
                max(0.0, metrics.success_rate - self.config.error_penalty), 6
            )
            metrics.touch()
            if (
                metrics.health_status is HealthStatus.HEALTHY
                and metrics.error_count > self.config.degraded_error_count
                and metrics.success_rate < self.config.degraded_success_rate
            ):
                metrics.health_status = HealthStatus.DEGRADED
                logger.warning(
                    "Agent %s marked degraded after %d errors (success rate %.2f)",
                    handle.agent_id,
                    metrics.error_count,
                    metrics.success_rate,
                )
        self._forward(message)

    async def _handle_status_update(self, message: AgentMessage) -> None:
        handle = self._handles.get(message.source_agent_id)
        if handle is None:
            logger.warning("Status update from unknown agent %s", message.source_agent_id)
            return
        metrics = handle.metrics
        status = message.payload_get("status")
        try:
            metrics.health_status = HealthStatus(status)
        except ValueError:
            logger.warning("Ignoring unknown status %r from %s", status, handle.agent_id)

        reported = message.payload_get("metrics") or {}
        if reported.get("averageProcessingTime") is not None:
            metrics.average_processing_time = float(reported["averageProcessingTime"])
            metrics.timing_samples = max(metrics.timing_samples, 1)
        if reported.get("errorCount") is not None:
            metrics.error_count = int(reported["errorCount"])
        if reported.get("errorRate") is not None:
            metrics.success_rate = max(0.0, min(1.0, 1.0 - float(reported["errorRate"])))
        metrics.touch()

    async def _handle_assistance_request(self, message: AgentMessage) -> None:
        requester = message.source_agent_id
        description = str(message.payload_get("problemDescription") or "")
        logger.info("Assistance requested by %s: %s", requester, description)

        helper_id = self._find_helper(description)
        if helper_id is None:
            logger.warning("No suitable agent found to help %s", requester)
            self._send_outbound(
                create_response(
                    message,
                    "no_helper_found",
                    {"message": "No suitable agent found to help with this request"},
                )
            )
            return

        logger.info("Delegating help request from %s to %s", requester, helper_id)
        helper = self._handles[helper_id].agent
        help_request = message.payload if isinstance(message.payload, dict) else {}
        self._spawn(
            helper.handle_help_request(help_request, requester),
            f"help from {helper_id} for {requester}",
        )

    def _find_helper(self, description: str) -> Optional[str]:
        # First matching topic decides; later topics are not consulted.
        for topic in self.config.help_topics:
            if topic.matches(description):
                for capability in topic.capabilities:
                    helper_id = self.find_agent_with_capability(capability)
                    if helper_id is not None:
                        return helper_id
                return None
        return None

    # Delivery

    def _deliver(self, handle: AgentHandle, message: AgentMessage) -> bool:
        try:
            handle.delivery_callback(message)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to deliver %s to %s: %s", message.message_id, handle.agent_id, exc)
            return False
        return True

    def _forward(self, message: AgentMessage) -> None:
        target = message.target_agent_id
        if target in (MCP_AGENT_ID, SYSTEM_TARGET):
            return
        if target == BROADCAST:
            for handle in list(self._handles.values()):
                if handle.agent_id != message.source_agent_id:
                    self._deliver(handle, message)
            return
        handle = self._handles.get(target)
        if handle is not None:
            self._deliver(handle, message)

    def _send_outbound(self, message: AgentMessage) -> None:
        """Announce a coordinator-authored envelope and hand it to its target."""
        self.bus.publish_message(message)
        self._forward(message)

    async def send_message_to_agent(
        self,
        target_agent_id: str,
        event_type: EventType,
        payload: Any,
        *,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an envelope authored by the coordinator to one agent.

        COMMAND envelopes are executed right away; the reply flows back through
        intake before this returns.
        """
        handle = self._handles.get(target_agent_id)
        if handle is None:
            logger.warning("Cannot send message to unknown agent %s", target_agent_id)
            return False
        message = create_message(
            MCP_AGENT_ID,
            target_agent_id,
            event_type,
            payload,
            correlation_id=correlation_id,
            metadata=metadata,
        )
        self.bus.publish_message(message)
        if event_type is EventType.COMMAND:
            await self._run_agent_command(handle, message)
            self.check_and_trigger_training()
            return True
        return self._deliver(handle, message)

    def broadcast_message(
        self,
        event_type: EventType,
        payload: Any,
        *,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AgentMessage:
        message = create_message(
            MCP_AGENT_ID,
            BROADCAST,
            event_type,
            payload,
            correlation_id=correlation_id,
            metadata=metadata,
        )
        self.bus.publish_message(message)
        for handle in list(self._handles.values()):
            self._deliver(handle, message)
        return message

    def broadcast_announcement(self, text: str, priority: str = "medium") -> AgentMessage:
        details = {
            "message": text,
            "priority": priority,
            "systemName": self.config.system_name,
            "version": self.config.version,
        }
        message = self.broadcast_message(EventType.EVENT, details, metadata={"priority": priority})
        self.emit_system_event("system_announcement", details)
        return message

    async def request_agent(
        self,
        agent_id: str,
        parameters: Dict[str, Any],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AgentMessage]:
        """Run ``process_request`` on one agent and return its RESPONSE or ERROR envelope."""
        if agent_id not in self._handles:
            raise AgentNotFoundError(f"Agent {agent_id} is not registered")

        correlation_id = str(uuid.uuid4())
        replies: List[AgentMessage] = []

        def capture(message: AgentMessage) -> None:
            if message.correlation_id == correlation_id and message.event_type in (
                EventType.RESPONSE,
                EventType.ERROR,
            ):
                replies.append(message)

        self.add_message_listener(capture)
        try:
            await self.send_message_to_agent(
                agent_id,
                EventType.COMMAND,
                {"commandName": "process_request", "parameters": parameters},
                correlation_id=correlation_id,
                metadata=metadata,
            )
        finally:
            self.remove_message_listener(capture)
        return replies[0] if replies else None

    # Training

    def check_and_trigger_training(self) -> bool:
        if self.replay_buffer.size() >= self.config.training.trigger_threshold:
            self.trigger_training()
            return True
        return False

    def trigger_training(self) -> Dict[str, int]:
        """Sample a batch and hand each agent its own experiences to learn from."""
        training = self.config.training
        experiences = self.replay_buffer.sample(training.sample_size, training.min_priority)
        if not experiences:
            logger.info("No experiences available for training")
            return {"experienceCount": 0, "agentCount": 0}

        grouped: Dict[str, List[Experience]] = defaultdict(list)
        for experience in experiences:
            grouped[experience.agent_id].append(experience)

        for agent_id, batch in grouped.items():
            handle = self._handles.get(agent_id)
            if handle is None:
                continue
            logger.info("Training agent %s with %d experiences", agent_id, len(batch))
            self._spawn(handle.agent.learn(batch), f"training for {agent_id}")

        self.training_runs += 1
        summary = {"experienceCount": len(experiences), "agentCount": len(grouped)}
        self.emit_system_event("training_triggered", summary)
        return summary

    # Health

    def get_system_status(self) -> SystemHealthSnapshot:
        return self.health.get_system_status()

    def perform_health_check(self) -> SystemHealthSnapshot:
        return self.health.perform_health_check()

    def perform_periodic_tasks(self) -> SystemHealthSnapshot:
        snapshot = self.perform_health_check()
        self.check_and_trigger_training()
        return snapshot

    # Lifecycle

    async def start(self, *, start_agents: bool = True) -> None:
        if start_agents:
            for handle in list(self._handles.values()):
                await handle.agent.start()
            self._agents_running = True
        if self.config.health_check_interval > 0:
            self.health.start(self.config.health_check_interval)
        logger.info("Coordinator started with %d agents", len(self._handles))

    async def shutdown(self) -> None:
        self._agents_running = False
        await self.health.stop()
        # Let pending agent starts settle so their loops are stopped below.
        await self.wait_for_background_tasks()
        await asyncio.gather(
            *(handle.agent.stop() for handle in self._handles.values()), return_exceptions=True
        )
        await self.wait_for_background_tasks()
        logger.info("Coordinator shut down")

    async def wait_for_background_tasks(self) -> None:
        """Wait for spawned help, training and async listener tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.bus.drain()

    def _spawn(self, coro: Awaitable[Any], description: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(finished: asyncio.Future[Any]) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("Background task %s failed: %s", description, exc)
            else:
                logger.debug("Background task %s completed", description)

        task.add_done_callback(_done)
