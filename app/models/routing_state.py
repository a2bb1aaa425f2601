from sqlalchemy import Column, String, Integer, Enum
import enum
from .base import BaseModel


class DeploymentPhase(str, enum.Enum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    PRE_CHECK = "pre_check"
    AWAITING_APPROVAL = "awaiting_approval"
    CUTOVER = "cutover"
    POST_CHECK = "post_check"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"


class RoutingState(BaseModel):
    """Affectation live/candidate d'un service, unique par service"""
    __tablename__ = "routing_states"

    service_name = Column(String(255), unique=True, nullable=False, index=True)

    # None tant que le premier déploiement (bootstrap) n'est pas commité
    live_set_id = Column(String(128), nullable=True)
    candidate_set_id = Column(String(128), nullable=True)
    previous_live_set_id = Column(String(128), nullable=True)

    phase = Column(Enum(DeploymentPhase), default=DeploymentPhase.IDLE, nullable=False)
    active_run_id = Column(String(64), nullable=True)

    # Compare-and-set: chaque mutation incrémente la version
    version = Column(Integer, default=0, nullable=False)
