from .base import BaseModel
from .artifact import Artifact
from .replica_set import ReplicaSet, ReplicaSetRole
from .routing_state import RoutingState, DeploymentPhase
from .pipeline_run import PipelineRun, StageResult, RunOutcome, StageOutcome, StageName
from .approval import ApprovalDecision, DecisionStatus
from .user import User, UserRole

__all__ = [
    "BaseModel", "Artifact", "ReplicaSet", "ReplicaSetRole", "RoutingState", "DeploymentPhase",
    "PipelineRun", "StageResult", "RunOutcome", "StageOutcome", "StageName",
    "ApprovalDecision", "DecisionStatus", "User", "UserRole"
]
