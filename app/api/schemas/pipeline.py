from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional
from datetime import datetime

from app.models.pipeline_run import RunOutcome, StageOutcome
from app.models.routing_state import DeploymentPhase
from app.models.approval import DecisionStatus


class TriggerRequest(BaseModel):
    source_revision: str = Field(..., min_length=1, description="Identifiant du commit à déployer")


class TriggerResponse(BaseModel):
    run_id: str
    service_name: str
    message: str


class StageResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    name: str
    outcome: StageOutcome
    started_at: datetime
    finished_at: datetime
    detail: Optional[str] = None


class PipelineRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    service_name: str
    source_revision: str
    revision_id: Optional[str] = None
    outcome: RunOutcome
    created_at: datetime
    finished_at: Optional[datetime] = None
    stages: List[StageResultResponse] = []


class RoutingStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    service_name: str
    live_set_id: Optional[str] = None
    candidate_set_id: Optional[str] = None
    previous_live_set_id: Optional[str] = None
    phase: DeploymentPhase
    active_run_id: Optional[str] = None
    version: int


class DecisionRequest(BaseModel):
    comment: Optional[str] = None


class DecisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    status: DecisionStatus
    requested_at: datetime
    deadline: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    comment: Optional[str] = None
    reason: Optional[str] = None


class CancelResponse(BaseModel):
    run_id: str
    message: str
