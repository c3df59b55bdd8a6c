"""HTTP API exposing coordinator capabilities."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from mcp_core.core.exceptions import AgentNotFoundError
from mcp_core.orchestration.coordinator import Coordinator
from mcp_core.runtime import get_coordinator

router = APIRouter(prefix="/agents", tags=["agents"])
system_router = APIRouter(prefix="/system", tags=["system"])


class AgentResponse(BaseModel):
    agent_id: str
    agent_type: str
    capabilities: List[str]
    success_rate: float
    average_processing_time: float
    error_count: int
    health_status: str
    last_updated: str

    @classmethod
    def from_metrics(cls, data: Dict[str, Any]) -> "AgentResponse":
        return cls(
            agent_id=data["agentId"],
            agent_type=data["agentType"],
            capabilities=data["capabilities"],
            success_rate=data["successRate"],
            average_processing_time=data["averageProcessingTime"],
            error_count=data["errorCount"],
            health_status=data["healthStatus"],
            last_updated=data["lastUpdated"],
        )


class AgentRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Arguments for process_request")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Envelope metadata")


class ReplyResponse(BaseModel):
    message_id: str
    correlation_id: str
    event_type: str
    payload: Any = None
    metadata: Optional[Dict[str, Any]] = None


class TrainingResponse(BaseModel):
    experience_count: int
    agent_count: int


@router.get("", response_model=List[AgentResponse])
async def list_agents(coordinator: Coordinator = Depends(get_coordinator)) -> List[AgentResponse]:
    return [AgentResponse.from_metrics(data) for data in coordinator.get_agent_metrics().values()]


@router.post("/{agent_id}/requests", response_model=ReplyResponse)
async def request_agent(
    agent_id: str,
    request: AgentRequest,
    coordinator: Coordinator = Depends(get_coordinator),
) -> ReplyResponse:
    try:
        reply = await coordinator.request_agent(agent_id, request.parameters, metadata=request.metadata)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if reply is None:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Agent produced no reply")
    return ReplyResponse(
        message_id=reply.message_id,
        correlation_id=reply.correlation_id,
        event_type=reply.event_type.value,
        payload=reply.payload,
        metadata=reply.metadata,
    )


@system_router.get("/status")
async def system_status(coordinator: Coordinator = Depends(get_coordinator)) -> dict:
    return coordinator.get_system_status().to_dict()


@system_router.post("/health-check")
async def health_check(coordinator: Coordinator = Depends(get_coordinator)) -> dict:
    return coordinator.perform_health_check().to_dict()


@system_router.post("/training", response_model=TrainingResponse)
async def trigger_training(coordinator: Coordinator = Depends(get_coordinator)) -> TrainingResponse:
    summary = coordinator.trigger_training()
    return TrainingResponse(
        experience_count=summary["experienceCount"],
        agent_count=summary["agentCount"],
    )
