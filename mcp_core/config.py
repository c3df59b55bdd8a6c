"""Configuration management for the coordination core."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from mcp_core.core.models import AgentType


@dataclass(frozen=True)
class AgentTypeConfig:
    """Per agent type settings consumed by the coordinator and the agent wrapper."""

    enabled: bool = True
    performance_threshold: float = 0.7
    max_retries: int = 3
    timeout_ms: int = 30000


@dataclass(frozen=True)
class ReplayBufferConfig:
    """Replay buffer backend selection and sizing."""

    type: str = "memory"
    max_size: int = 1000
    priority_threshold: float = 0.7
    exploitation_ratio: float = 0.7


@dataclass(frozen=True)
class TrainingConfig:
    """When training fires and how large the sampled batch is."""

    trigger_threshold: int = 100
    sample_size: int = 50
    min_priority: Optional[float] = 0.3


@dataclass(frozen=True)
class HelpTopic:
    """Keyword bucket used to route assistance requests to a capability."""

    name: str
    keywords: Tuple[str, ...]
    capabilities: Tuple[str, ...]

    def matches(self, description: str) -> bool:
        text = description.lower()
        return any(keyword in text for keyword in self.keywords)


DEFAULT_HELP_TOPICS: Tuple[HelpTopic, ...] = (
    HelpTopic(
        name="valuation",
        keywords=("valuation", "income", "multiplier"),
        capabilities=("income_analysis", "valuation_calculation"),
    ),
    HelpTopic(
        name="data_quality",
        keywords=("data quality", "validation", "duplicate"),
        capabilities=("data_validation", "duplicate_detection"),
    ),
    HelpTopic(
        name="reporting",
        keywords=("report", "insight", "summary"),
        capabilities=("report_generation", "insight_generation"),
    ),
)


@dataclass(frozen=True)
class CoordinatorConfig:
    """Coordinator configuration loaded from environment variables or a mapping."""

    system_name: str = "Benton County Property Valuation System"
    version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    max_agents: int = 50
    message_timeout: float = 30.0
    max_retries: int = 3
    log_messages: bool = False
    throttle_requests: bool = False
    throttle_limit: int = 100
    health_check_interval: float = 60.0
    smoothing_factor: float = 0.3
    error_penalty: float = 0.1
    success_reward: float = 0.02
    degraded_error_count: int = 5
    degraded_success_rate: float = 0.5
    replay_buffer: ReplayBufferConfig = field(default_factory=ReplayBufferConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    default_agent_config: AgentTypeConfig = field(default_factory=AgentTypeConfig)
    agent_configs: Mapping[AgentType, AgentTypeConfig] = field(default_factory=dict)
    help_topics: Tuple[HelpTopic, ...] = DEFAULT_HELP_TOPICS

    def agent_config(self, agent_type: AgentType) -> AgentTypeConfig:
        """Return the settings for an agent type, falling back to the defaults."""
        return self.agent_configs.get(agent_type, self.default_agent_config)

    @classmethod
    def from_env(cls) -> CoordinatorConfig:
        """Load configuration from environment variables."""
        environment = os.getenv("ENVIRONMENT", "development")
        base = cls.for_environment(environment)

        replay_buffer = base.replay_buffer
        if os.getenv("MCP_REPLAY_MAX_SIZE"):
            replay_buffer = replace(replay_buffer, max_size=int(os.environ["MCP_REPLAY_MAX_SIZE"]))

        training = base.training
        if os.getenv("MCP_TRAINING_TRIGGER_THRESHOLD"):
            training = replace(
                training, trigger_threshold=int(os.environ["MCP_TRAINING_TRIGGER_THRESHOLD"])
            )
        if os.getenv("MCP_TRAINING_SAMPLE_SIZE"):
            training = replace(training, sample_size=int(os.environ["MCP_TRAINING_SAMPLE_SIZE"]))

        return replace(
            base,
            log_level=os.getenv("LOG_LEVEL", base.log_level).upper(),
            max_agents=int(os.getenv("MCP_MAX_AGENTS", str(base.max_agents))),
            message_timeout=float(os.getenv("MCP_MESSAGE_TIMEOUT", str(base.message_timeout))),
            log_messages=_env_flag("MCP_LOG_MESSAGES", base.log_messages),
            health_check_interval=float(
                os.getenv("MCP_HEALTH_CHECK_INTERVAL", str(base.health_check_interval))
            ),
            replay_buffer=replay_buffer,
            training=training,
        )

    @classmethod
    def for_environment(cls, environment: str) -> CoordinatorConfig:
        """Defaults for a deployment environment."""
        if environment == "production":
            return cls(
                environment=environment,
                replay_buffer=ReplayBufferConfig(type="postgres", max_size=10000),
                training=TrainingConfig(trigger_threshold=500, sample_size=200, min_priority=0.3),
            )
        return cls(environment=environment)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CoordinatorConfig:
        """Build a config from the camelCase key/value objects handed over by callers.

        Unknown keys are ignored; missing keys keep their defaults.
        """
        defaults = cls()
        buffer_data = data.get("replayBuffer", {})
        training_data = data.get("training", {})
        default_agent = _agent_config_from_mapping(
            data.get("defaultAgentConfig", {}), defaults.default_agent_config
        )

        agent_configs: Dict[AgentType, AgentTypeConfig] = {}
        for key, value in data.get("agents", {}).items():
            agent_configs[AgentType(key)] = _agent_config_from_mapping(value, default_agent)

        help_topics = defaults.help_topics
        if "helpTopics" in data:
            help_topics = tuple(
                HelpTopic(
                    name=topic["name"],
                    keywords=tuple(k.lower() for k in topic["keywords"]),
                    capabilities=tuple(topic["capabilities"]),
                )
                for topic in data["helpTopics"]
            )

        return cls(
            system_name=data.get("systemName", defaults.system_name),
            version=data.get("version", defaults.version),
            environment=data.get("environment", defaults.environment),
            log_level=str(data.get("logLevel", defaults.log_level)).upper(),
            max_agents=int(data.get("maxAgents", defaults.max_agents)),
            message_timeout=float(data.get("messageTimeout", defaults.message_timeout)),
            max_retries=int(data.get("maxRetries", defaults.max_retries)),
            log_messages=bool(data.get("logMessages", defaults.log_messages)),
            throttle_requests=bool(data.get("throttleRequests", defaults.throttle_requests)),
            throttle_limit=int(data.get("throttleLimit", defaults.throttle_limit)),
            health_check_interval=float(
                data.get("healthCheckInterval", defaults.health_check_interval)
            ),
            smoothing_factor=float(data.get("smoothingFactor", defaults.smoothing_factor)),
            replay_buffer=ReplayBufferConfig(
                type=buffer_data.get("type", defaults.replay_buffer.type),
                max_size=int(buffer_data.get("maxSize", defaults.replay_buffer.max_size)),
                priority_threshold=float(
                    buffer_data.get("priorityThreshold", defaults.replay_buffer.priority_threshold)
                ),
                exploitation_ratio=float(
                    buffer_data.get("exploitationRatio", defaults.replay_buffer.exploitation_ratio)
                ),
            ),
            training=TrainingConfig(
                trigger_threshold=int(
                    training_data.get("triggerThreshold", defaults.training.trigger_threshold)
                ),
                sample_size=int(training_data.get("sampleSize", defaults.training.sample_size)),
                min_priority=training_data.get("minPriority", defaults.training.min_priority),
            ),
            default_agent_config=default_agent,
            agent_configs=agent_configs,
            help_topics=help_topics,
        )


def _agent_config_from_mapping(data: Mapping[str, Any], base: AgentTypeConfig) -> AgentTypeConfig:
    return AgentTypeConfig(
        enabled=bool(data.get("enabled", base.enabled)),
        performance_threshold=float(data.get("performanceThreshold", base.performance_threshold)),
        max_retries=int(data.get("maxRetries", base.max_retries)),
        timeout_ms=int(data.get("timeoutMs", base.timeout_ms)),
    )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Global config instance
config = CoordinatorConfig.from_env()
