"""Envelope construction and validation for the agent communication protocol."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcp_core.core.models import (
    AgentMessage,
    ErrorCode,
    EventType,
    Experience,
    MessagePriority,
    isoformat_now,
)

MCP_AGENT_ID = "MCP"
BROADCAST = "broadcast"
SYSTEM_TARGET = "system"


class MetadataSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    priority: Optional[MessagePriority] = None
    ttl: Optional[float] = Field(default=None, gt=0)
    retryCount: Optional[int] = Field(default=None, ge=0)
    processingTime: Optional[float] = Field(default=None, ge=0)
    confidenceScore: Optional[float] = Field(default=None, ge=0, le=100)


class AgentMessageSchema(BaseModel):
    """Structural contract every envelope must satisfy before it is routed."""

    messageId: uuid.UUID
    correlationId: uuid.UUID
    sourceAgentId: str = Field(min_length=1)
    targetAgentId: str = Field(min_length=1)
    timestamp: str
    eventType: EventType
    payload: Any = None
    metadata: Optional[MetadataSchema] = None

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp_with_offset(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("must be an ISO-8601 timestamp") from exc
        if parsed.tzinfo is None:
            raise ValueError("must include a UTC offset")
        return value


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def create_message(
    source_agent_id: str,
    target_agent_id: str,
    event_type: EventType,
    payload: Any,
    *,
    correlation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AgentMessage:
    """Build a fresh envelope; the correlation id is reused when supplied."""
    return AgentMessage(
        message_id=str(uuid.uuid4()),
        correlation_id=correlation_id or str(uuid.uuid4()),
        source_agent_id=source_agent_id,
        target_agent_id=target_agent_id,
        timestamp=isoformat_now(),
        event_type=event_type,
        payload=payload,
        metadata=dict(metadata) if metadata is not None else None,
    )


def create_response(
    request: AgentMessage,
    status: str,
    result: Any,
    metadata: Optional[Dict[str, Any]] = None,
) -> AgentMessage:
    """Reply to ``request``: source and target swapped, correlation id inherited."""
    return create_message(
        request.target_agent_id,
        request.source_agent_id,
        EventType.RESPONSE,
        {"status": status, "result": result},
        correlation_id=request.correlation_id,
        metadata=metadata,
    )


def create_error_message(
    request: AgentMessage,
    error_code: Union[ErrorCode, str],
    error_message: str,
    details: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AgentMessage:
    """Error reply to ``request``; always carries high priority."""
    code = error_code.value if isinstance(error_code, ErrorCode) else error_code
    return create_message(
        request.target_agent_id,
        request.source_agent_id,
        EventType.ERROR,
        {"errorCode": code, "errorMessage": error_message, "details": details},
        correlation_id=request.correlation_id,
        metadata={**(metadata or {}), "priority": MessagePriority.HIGH.value},
    )


def validate_message(candidate: Union[AgentMessage, Mapping[str, Any], Any]) -> ValidationResult:
    """Check the envelope structure without raising."""
    if isinstance(candidate, AgentMessage):
        data: Any = candidate.to_dict()
    elif isinstance(candidate, Mapping):
        data = dict(candidate)
    else:
        return ValidationResult(valid=False, errors=[f"unsupported message type: {type(candidate).__name__}"])

    try:
        AgentMessageSchema.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or 'message'}: {error['msg']}"
            for error in exc.errors()
        ]
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult(valid=True)


def create_experience(
    agent_id: str,
    state: Any,
    action: Any,
    result: Any,
    next_state: Any,
    *,
    reward_signal: float = 0.0,
    priority: float = 0.5,
    experience_id: Optional[str] = None,
    timestamp: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Experience:
    return Experience(
        experience_id=experience_id or str(uuid.uuid4()),
        agent_id=agent_id,
        timestamp=timestamp or isoformat_now(),
        state=state if state is not None else {},
        action=action if action is not None else {},
        result=result if result is not None else {},
        next_state=next_state if next_state is not None else {},
        reward_signal=reward_signal,
        metadata={**(metadata or {}), "priority": priority},
    )
