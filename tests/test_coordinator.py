"""Tests for coordinator routing, metrics and training."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Sequence, Tuple

import pytest

from mcp_core.agents.base import Agent
from mcp_core.config import AgentTypeConfig, CoordinatorConfig, TrainingConfig
from mcp_core.core.exceptions import AgentExecutionError, AgentNotFoundError
from mcp_core.core.models import (
    AgentMessage,
    AgentState,
    AgentType,
    EventType,
    Experience,
    HealthStatus,
    utc_now,
)
from mcp_core.core.protocol import BROADCAST, MCP_AGENT_ID, create_message
from mcp_core.orchestration.coordinator import Coordinator


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class StubAgent(Agent):
    agent_type = AgentType.VALUATION

    def __init__(
        self,
        agent_id: str,
        capabilities: Sequence[str] = ("income_analysis",),
        *,
        fail: bool = False,
        delay: float = 0.0,
    ) -> None:
        super().__init__(agent_id, AgentTypeConfig(max_retries=0, timeout_ms=5000))
        self.capabilities = tuple(capabilities)
        self.fail = fail
        self.delay = delay
        self.help_requests: List[Tuple[str, Dict[str, Any]]] = []
        self.learned: List[Experience] = []

    async def process_request(self, parameters: Dict[str, Any]) -> Any:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AgentExecutionError("boom")
        return {"echo": parameters}

    async def handle_help_request(self, help_request: Dict[str, Any], requesting_agent_id: str) -> None:
        self.help_requests.append((requesting_agent_id, help_request))

    async def learn(self, experiences: List[Experience]) -> None:
        self.learned.extend(experiences)


def _coordinator(**overrides: Any) -> Coordinator:
    return Coordinator(replace(CoordinatorConfig(), **overrides))


def _response(source: str, *, status: str = "success", metadata: Dict[str, Any] | None = None) -> AgentMessage:
    return create_message(
        source, MCP_AGENT_ID, EventType.RESPONSE, {"status": status, "result": {}}, metadata=metadata
    )


def _error(source: str) -> AgentMessage:
    return create_message(
        source,
        MCP_AGENT_ID,
        EventType.ERROR,
        {"errorCode": "PROCESSING_ERROR", "errorMessage": "failed"},
    )


def _drain(agent: Agent) -> List[AgentMessage]:
    messages = []
    while not agent.inbox.empty():
        messages.append(agent.inbox.get_nowait())
    return messages


@pytest.mark.anyio
async def test_registration_rules_and_event() -> None:
    coordinator = _coordinator(max_agents=2)
    events: List[AgentMessage] = []
    coordinator.subscribe("agent_registered", events.append)

    assert coordinator.register_agent(StubAgent("A1"))
    assert not coordinator.register_agent(StubAgent("A1"))
    assert not coordinator.register_agent(StubAgent(MCP_AGENT_ID))
    assert coordinator.register_agent(StubAgent("A2"))
    assert not coordinator.register_agent(StubAgent("A3"))

    assert [event.payload["agentId"] for event in events] == ["A1", "A2"]
    assert coordinator.unregister_agent("A1")
    assert not coordinator.unregister_agent("A1")
    assert coordinator.get_agent("A1") is None


@pytest.mark.anyio
async def test_disabled_agent_type_is_refused() -> None:
    coordinator = _coordinator(agent_configs={AgentType.VALUATION: AgentTypeConfig(enabled=False)})
    assert not coordinator.register_agent(StubAgent("A1"))
    assert coordinator.get_agents_by_type("valuation") == []


@pytest.mark.anyio
async def test_reward_and_priority_rules() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    assert coordinator.calculate_reward_signal(_response("A1")) == 1.0
    assert coordinator.calculate_reward_signal(_response("A1", status="partial")) == -0.5
    assert coordinator.calculate_reward_signal(_error("A1")) == -1.0
    assert coordinator.calculate_experience_priority(_error("A1")) == 0.9
    assert coordinator.calculate_experience_priority(_response("A1")) == 0.5
    assert (
        coordinator.calculate_experience_priority(_response("A1", metadata={"confidenceScore": 30}))
        == 0.7
    )

    metrics = coordinator.get_handle("A1").metrics
    metrics.average_processing_time = 100.0
    metrics.timing_samples = 1
    assert coordinator.calculate_experience_priority(_response("A1", metadata={"processingTime": 300})) == 0.7
    assert coordinator.calculate_experience_priority(_response("A1", metadata={"processingTime": 40})) == 0.7
    assert coordinator.calculate_experience_priority(_response("A1", metadata={"processingTime": 120})) == 0.5


@pytest.mark.anyio
async def test_only_outcome_messages_become_experiences() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    await coordinator.handle_message(
        create_message("A1", MCP_AGENT_ID, EventType.STATUS_UPDATE, {"status": "healthy"})
    )
    await coordinator.handle_message(create_message("A1", MCP_AGENT_ID, EventType.QUERY, {}))
    assert coordinator.get_replay_buffer_size() == 0

    assistance = create_message(
        "A1", MCP_AGENT_ID, EventType.ASSISTANCE_REQUESTED, {"problemDescription": "unrelated"}
    )
    await coordinator.handle_message(assistance)
    [experience] = coordinator.replay_buffer.get_all()
    assert experience.experience_id == assistance.message_id
    assert experience.reward_signal == -0.2
    assert experience.priority == 0.8


@pytest.mark.anyio
async def test_capability_lookup_prefers_best_success_rate() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1", ("income_analysis",)))
    coordinator.register_agent(StubAgent("A2", ("income_analysis",)))
    assert coordinator.find_agent_with_capability("income_analysis") == "A1"

    coordinator.get_handle("A1").metrics.success_rate = 0.8
    coordinator.get_handle("A2").metrics.success_rate = 0.95
    assert coordinator.find_agent_with_capability("income_analysis") == "A2"
    assert coordinator.find_agent_with_capability("report_generation") is None


@pytest.mark.anyio
async def test_repeated_errors_degrade_agent() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))
    metrics = coordinator.get_handle("A1").metrics

    for _ in range(5):
        await coordinator.handle_message(_error("A1"))
    assert metrics.health_status is HealthStatus.HEALTHY

    await coordinator.handle_message(_error("A1"))
    assert metrics.error_count == 6
    assert metrics.success_rate == pytest.approx(0.4)
    assert metrics.health_status is HealthStatus.DEGRADED


@pytest.mark.anyio
async def test_request_round_trip_updates_metrics_and_buffer() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))
    seen: List[AgentMessage] = []
    coordinator.add_message_listener(seen.append)

    reply = await coordinator.request_agent("A1", {"incomes": []})

    assert reply is not None
    assert reply.event_type is EventType.RESPONSE
    assert reply.payload == {"status": "success", "result": {"echo": {"incomes": []}}}
    assert [message.event_type for message in seen] == [EventType.COMMAND, EventType.RESPONSE]
    assert seen[0].correlation_id == reply.correlation_id

    [experience] = coordinator.replay_buffer.get_all()
    assert experience.agent_id == "A1"
    assert experience.reward_signal == 1.0

    metrics = coordinator.get_handle("A1").metrics
    assert metrics.timing_samples == 1
    assert metrics.average_processing_time == reply.meta("processingTime")
    assert metrics.success_rate == 1.0


@pytest.mark.anyio
async def test_request_to_unknown_agent_raises() -> None:
    coordinator = _coordinator()
    with pytest.raises(AgentNotFoundError):
        await coordinator.request_agent("missing", {})
    assert not await coordinator.send_message_to_agent("missing", EventType.EVENT, {})


@pytest.mark.anyio
async def test_failing_agent_produces_error_reply() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1", fail=True))

    reply = await coordinator.request_agent("A1", {})

    assert reply is not None
    assert reply.event_type is EventType.ERROR
    assert reply.payload["errorCode"] == "PROCESSING_ERROR"
    assert reply.meta("priority") == "high"
    metrics = coordinator.get_handle("A1").metrics
    assert metrics.error_count == 1
    assert metrics.success_rate == pytest.approx(0.9)


@pytest.mark.anyio
async def test_slow_agent_times_out() -> None:
    coordinator = _coordinator(message_timeout=0.05)
    coordinator.register_agent(StubAgent("A1", delay=1.0))

    reply = await coordinator.request_agent("A1", {})

    assert reply is not None
    assert reply.payload["errorCode"] == "TIMEOUT_ERROR"


@pytest.mark.anyio
async def test_training_triggers_at_threshold() -> None:
    coordinator = _coordinator(training=TrainingConfig(trigger_threshold=5, sample_size=50))
    agent = StubAgent("A1")
    coordinator.register_agent(agent)
    events: List[AgentMessage] = []
    coordinator.subscribe("training_triggered", events.append)

    for _ in range(4):
        await coordinator.handle_message(_response("A1"))
    assert events == []

    await coordinator.handle_message(_response("A1"))
    await coordinator.wait_for_background_tasks()

    assert len(events) == 1
    assert events[0].payload["experienceCount"] == 5
    assert events[0].payload["agentCount"] == 1
    assert len(agent.learned) == 5


@pytest.mark.anyio
async def test_failing_listener_does_not_block_others() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))
    received: List[AgentMessage] = []

    def broken(message: AgentMessage) -> None:
        raise RuntimeError("listener failure")

    coordinator.add_message_listener(broken)
    coordinator.add_message_listener(received.append)

    await coordinator.handle_message(_response("A1"))

    assert len(received) == 1
    assert coordinator.get_replay_buffer_size() == 1


@pytest.mark.anyio
async def test_invalid_and_expired_messages_are_dropped() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    invalid = _response("A1").to_dict()
    invalid["messageId"] = "nope"
    await coordinator.handle_message(invalid)

    expired = _response("A1", metadata={"ttl": 1}).to_dict()
    expired["timestamp"] = (utc_now() - timedelta(seconds=10)).isoformat()
    await coordinator.handle_message(expired)

    assert coordinator.messages_processed == 0
    assert coordinator.get_replay_buffer_size() == 0


@pytest.mark.anyio
async def test_throttling_drops_excess_messages() -> None:
    coordinator = _coordinator(throttle_requests=True, throttle_limit=2)
    coordinator.register_agent(StubAgent("A1"))

    for _ in range(3):
        await coordinator.handle_message(_response("A1"))

    assert coordinator.messages_processed == 2


@pytest.mark.anyio
async def test_unknown_admin_command_returns_error() -> None:
    coordinator = _coordinator()
    agent = StubAgent("A1")
    coordinator.register_agent(agent)

    await coordinator.handle_message(
        create_message("A1", MCP_AGENT_ID, EventType.COMMAND, {"commandName": "reboot"})
    )

    [reply] = _drain(agent)
    assert reply.event_type is EventType.ERROR
    assert reply.payload["errorCode"] == "COMMAND_ERROR"
    assert "reboot" in reply.payload["errorMessage"]
    assert coordinator.get_replay_buffer_size() == 0


@pytest.mark.anyio
async def test_admin_commands() -> None:
    coordinator = _coordinator()
    agent = StubAgent("A1")
    coordinator.register_agent(agent)

    await coordinator.handle_message(
        create_message("A1", MCP_AGENT_ID, EventType.COMMAND, {"commandName": "get_agent_metrics"})
    )
    await coordinator.handle_message(
        create_message(
            "A1",
            MCP_AGENT_ID,
            EventType.COMMAND,
            {"commandName": "find_agent_with_capability", "parameters": {"capability": "income_analysis"}},
        )
    )

    metrics_reply, lookup_reply = _drain(agent)
    assert metrics_reply.payload["result"]["metrics"]["A1"]["successRate"] == 1.0
    assert lookup_reply.payload["result"] == {"agentId": "A1"}


@pytest.mark.anyio
async def test_command_to_unknown_agent_is_ignored() -> None:
    coordinator = _coordinator()
    await coordinator.handle_message(
        create_message(MCP_AGENT_ID, "ghost", EventType.COMMAND, {"commandName": "process_request"})
    )
    assert coordinator.messages_processed == 1
    assert coordinator.get_replay_buffer_size() == 0


@pytest.mark.anyio
async def test_assistance_without_helper() -> None:
    coordinator = _coordinator()
    agent = StubAgent("A1", ("income_analysis",))
    coordinator.register_agent(agent)

    await coordinator.handle_message(
        create_message(
            "A1",
            MCP_AGENT_ID,
            EventType.ASSISTANCE_REQUESTED,
            {"problemDescription": "Duplicate rows in the import"},
        )
    )

    [reply] = _drain(agent)
    assert reply.event_type is EventType.RESPONSE
    assert reply.payload["status"] == "no_helper_found"
    assert coordinator.get_replay_buffer_size() == 1


@pytest.mark.anyio
async def test_assistance_is_delegated_to_capable_agent() -> None:
    coordinator = _coordinator()
    requester = StubAgent("A1", ("report_generation",))
    helper = StubAgent("A2", ("data_validation",))
    coordinator.register_agent(requester)
    coordinator.register_agent(helper)

    await requester.request_help("Found a duplicate entry in the ledger", task_id="t-1")
    await coordinator.wait_for_background_tasks()

    [(requesting_id, request)] = helper.help_requests
    assert requesting_id == "A1"
    assert request["taskId"] == "t-1"
    assert _drain(requester) == []


@pytest.mark.anyio
async def test_status_update_overwrites_metrics() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    await coordinator.handle_message(
        create_message(
            "A1",
            MCP_AGENT_ID,
            EventType.STATUS_UPDATE,
            {"status": "degraded", "metrics": {"errorRate": 0.25, "averageProcessingTime": 42.0}},
        )
    )

    metrics = coordinator.get_handle("A1").metrics
    assert metrics.health_status is HealthStatus.DEGRADED
    assert metrics.success_rate == pytest.approx(0.75)
    assert metrics.average_processing_time == 42.0


@pytest.mark.anyio
async def test_responses_and_broadcasts_are_forwarded() -> None:
    coordinator = _coordinator()
    first = StubAgent("A1")
    second = StubAgent("A2")
    coordinator.register_agent(first)
    coordinator.register_agent(second)

    await coordinator.handle_message(
        create_message("A1", "A2", EventType.RESPONSE, {"status": "success", "result": 1})
    )
    [forwarded] = _drain(second)
    assert forwarded.source_agent_id == "A1"

    await coordinator.handle_message(
        create_message(MCP_AGENT_ID, BROADCAST, EventType.COMMAND, {"commandName": "refresh"})
    )
    assert len(_drain(first)) == 1
    assert len(_drain(second)) == 1


@pytest.mark.anyio
async def test_broadcast_announcement_reaches_every_agent() -> None:
    coordinator = _coordinator(system_name="Test System")
    agents = [StubAgent("A1"), StubAgent("A2")]
    for agent in agents:
        coordinator.register_agent(agent)
    announcements: List[AgentMessage] = []
    coordinator.subscribe("system_announcement", announcements.append)

    coordinator.broadcast_announcement("maintenance at noon", priority="high")

    for agent in agents:
        [message] = _drain(agent)
        assert message.event_type is EventType.EVENT
        assert message.payload["message"] == "maintenance at noon"
    assert announcements[0].payload["systemName"] == "Test System"


@pytest.mark.anyio
async def test_agent_inbox_loop_receives_deliveries() -> None:
    coordinator = _coordinator(health_check_interval=0)
    received: List[AgentMessage] = []

    class RecordingAgent(StubAgent):
        async def handle_message(self, message: AgentMessage) -> None:
            received.append(message)

    coordinator.register_agent(RecordingAgent("A1"))
    await coordinator.start()
    try:
        assert await coordinator.send_message_to_agent("A1", EventType.EVENT, {"note": "hi"})
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)
    finally:
        await coordinator.shutdown()

    assert received[0].payload == {"note": "hi"}


@pytest.mark.anyio
async def test_numeric_timestamp_with_ttl_is_rejected_at_intake() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    message = _response("A1", metadata={"ttl": 5}).to_dict()
    message["timestamp"] = 1700000000
    await coordinator.handle_message(message)

    assert coordinator.messages_processed == 0
    assert coordinator.get_replay_buffer_size() == 0


@pytest.mark.anyio
async def test_reported_average_is_smoothed_by_next_response() -> None:
    coordinator = _coordinator()
    coordinator.register_agent(StubAgent("A1"))

    await coordinator.handle_message(
        create_message(
            "A1",
            MCP_AGENT_ID,
            EventType.STATUS_UPDATE,
            {"status": "healthy", "metrics": {"averageProcessingTime": 100.0}},
        )
    )
    await coordinator.handle_message(_response("A1", metadata={"processingTime": 200}))

    assert coordinator.get_handle("A1").metrics.average_processing_time == pytest.approx(130.0)


@pytest.mark.anyio
async def test_failing_learn_hook_does_not_stop_training_of_others() -> None:
    class BrokenLearner(StubAgent):
        async def learn(self, experiences: List[Experience]) -> None:
            raise RuntimeError("learning failed")

    coordinator = _coordinator(training=TrainingConfig(trigger_threshold=2, sample_size=10))
    coordinator.register_agent(BrokenLearner("A1"))
    healthy = StubAgent("A2")
    coordinator.register_agent(healthy)

    await coordinator.handle_message(_response("A1"))
    await coordinator.handle_message(_response("A2"))
    await coordinator.wait_for_background_tasks()

    assert coordinator.training_runs == 1
    assert [exp.agent_id for exp in healthy.learned] == ["A2"]

    reply = await coordinator.request_agent("A2", {"task": "next"})
    assert reply is not None
    assert reply.event_type is EventType.RESPONSE


@pytest.mark.anyio
async def test_one_command_runs_one_training_cycle() -> None:
    coordinator = _coordinator(training=TrainingConfig(trigger_threshold=1, sample_size=10))
    coordinator.register_agent(StubAgent("A1"))
    events: List[AgentMessage] = []
    coordinator.subscribe("training_triggered", events.append)

    await coordinator.handle_message(
        create_message(
            "client",
            "A1",
            EventType.COMMAND,
            {"commandName": "process_request", "parameters": {}},
        )
    )
    assert len(events) == 1

    await coordinator.request_agent("A1", {})
    await coordinator.wait_for_background_tasks()
    assert len(events) == 2


@pytest.mark.anyio
async def test_agent_registered_after_start_gets_inbox_loop() -> None:
    received: List[AgentMessage] = []

    class RecordingAgent(StubAgent):
        async def handle_message(self, message: AgentMessage) -> None:
            received.append(message)

    coordinator = _coordinator(health_check_interval=0)
    await coordinator.start()
    late = RecordingAgent("A1")
    try:
        assert coordinator.register_agent(late)
        await coordinator.wait_for_background_tasks()
        assert late.state is AgentState.RUNNING

        assert await coordinator.send_message_to_agent("A1", EventType.EVENT, {"note": "late"})
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)
    finally:
        await coordinator.shutdown()

    assert received[0].payload == {"note": "late"}
    assert late.state is AgentState.STOPPED


@pytest.mark.anyio
async def test_unregistering_running_agent_stops_it() -> None:
    coordinator = _coordinator(health_check_interval=0)
    agent = StubAgent("A1")
    coordinator.register_agent(agent)
    await coordinator.start()

    coordinator.unregister_agent("A1")
    await coordinator.wait_for_background_tasks()

    assert agent.state is AgentState.STOPPED
    await coordinator.shutdown()
