"""Core data models shared across coordination components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, FrozenSet, List, Optional


class EventType(str, Enum):
    """Kinds of envelope exchanged between agents and the coordinator."""

    COMMAND = "COMMAND"
    EVENT = "EVENT"
    QUERY = "QUERY"
    RESPONSE = "RESPONSE"
    ERROR = "ERROR"
    STATUS_UPDATE = "STATUS_UPDATE"
    ASSISTANCE_REQUESTED = "ASSISTANCE_REQUESTED"


class AgentType(str, Enum):
    """Fixed set of agent roles known to the coordinator."""

    MCP = "mcp"
    VALUATION = "valuation"
    DATA_CLEANER = "data-cleaner"
    REPORTING = "reporting"
    DATA_INTEGRATION = "data-integration"
    NLP = "nlp"
    COMPLIANCE = "compliance"


class MessagePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, statuses: List[HealthStatus]) -> HealthStatus:
        return max(statuses, key=lambda status: status.severity, default=cls.HEALTHY)


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.ERROR: 2}


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RESOURCE_ERROR = "RESOURCE_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    COMMUNICATION_ERROR = "COMMUNICATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    COMMAND_ERROR = "COMMAND_ERROR"
    COMMAND_PROCESSING_ERROR = "COMMAND_PROCESSING_ERROR"


class Capability(str, Enum):
    """Known capability tags; agents may still declare free-text tags."""

    INCOME_ANALYSIS = "income_analysis"
    VALUATION_CALCULATION = "valuation_calculation"
    ANOMALY_DETECTION = "anomaly_detection"
    DATA_VALIDATION = "data_validation"
    DUPLICATE_DETECTION = "duplicate_detection"
    REPORT_GENERATION = "report_generation"
    INSIGHT_GENERATION = "insight_generation"
    SUMMARY_GENERATION = "summary_generation"
    COMPLIANCE_CHECK = "compliance_check"


class AgentState(Enum):
    """Lifecycle states of an agent's inbox loop."""

    SPAWNING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_now() -> str:
    return utc_now().isoformat()


@dataclass(frozen=True, slots=True)
class AgentMessage:
    """Immutable envelope exchanged between agents through the coordinator."""

    message_id: str
    correlation_id: str
    source_agent_id: str
    target_agent_id: str
    timestamp: str
    event_type: EventType
    payload: Any = None
    metadata: Optional[Dict[str, Any]] = None

    def meta(self, key: str, default: Any = None) -> Any:
        if not self.metadata:
            return default
        return self.metadata.get(key, default)

    def payload_get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.payload, dict):
            return self.payload.get(key, default)
        return default

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when ``metadata.ttl`` seconds have passed since the timestamp."""
        ttl = self.meta("ttl")
        if not ttl:
            return False
        created = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        return (now or utc_now()) > created + timedelta(seconds=float(ttl))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "messageId": self.message_id,
            "correlationId": self.correlation_id,
            "sourceAgentId": self.source_agent_id,
            "targetAgentId": self.target_agent_id,
            "timestamp": self.timestamp,
            "eventType": self.event_type.value,
            "payload": self.payload,
        }
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AgentMessage:
        return cls(
            message_id=data["messageId"],
            correlation_id=data["correlationId"],
            source_agent_id=data["sourceAgentId"],
            target_agent_id=data["targetAgentId"],
            timestamp=data["timestamp"],
            event_type=EventType(data["eventType"]),
            payload=data.get("payload"),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True, slots=True)
class Experience:
    """Recorded outcome of an interaction, stored in the replay buffer."""

    experience_id: str
    agent_id: str
    timestamp: str
    state: Any
    action: Any
    result: Any
    next_state: Any
    reward_signal: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> float:
        return float(self.metadata.get("priority", 0.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experienceId": self.experience_id,
            "agentId": self.agent_id,
            "timestamp": self.timestamp,
            "state": self.state,
            "action": self.action,
            "result": self.result,
            "nextState": self.next_state,
            "rewardSignal": self.reward_signal,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class PerformanceMetrics:
    """Running metrics the coordinator keeps for every registered agent."""

    success_rate: float = 1.0
    average_processing_time: float = 0.0
    timing_samples: int = 0
    error_count: int = 0
    health_status: HealthStatus = HealthStatus.HEALTHY
    last_updated: datetime = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_updated = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successRate": self.success_rate,
            "averageProcessingTime": self.average_processing_time,
            "errorCount": self.error_count,
            "healthStatus": self.health_status.value,
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass(slots=True)
class AgentHandle:
    """Coordinator-side view of a registered agent."""

    agent_id: str
    agent_type: AgentType
    capabilities: FrozenSet[str]
    delivery_callback: Callable[[AgentMessage], None]
    agent: Any
    registration_index: int = 0
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "agentType": self.agent_type.value,
            "capabilities": sorted(self.capabilities),
            **self.metrics.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SystemHealthSnapshot:
    """Point-in-time health of the coordinator and its agents."""

    status: HealthStatus
    timestamp: str
    components: Dict[str, HealthStatus]
    metrics: Dict[str, Any]
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "components": {name: status.value for name, status in self.components.items()},
            "metrics": dict(self.metrics),
            "issues": list(self.issues),
        }
