from sqlalchemy import Column, String, Integer, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
import enum
from .base import BaseModel


class ReplicaSetRole(str, enum.Enum):
    BLUE = "blue"          # live
    GREEN = "green"        # candidate
    RETIRING = "retiring"


class ReplicaSet(BaseModel):
    __tablename__ = "replica_sets"

    set_id = Column(String(128), unique=True, nullable=False, index=True)
    service_name = Column(String(255), nullable=False, index=True)
    revision_id = Column(String(128), ForeignKey("artifacts.revision_id"), nullable=False)

    role = Column(Enum(ReplicaSetRole), default=ReplicaSetRole.GREEN, nullable=False)
    instance_count = Column(Integer, nullable=False)
    desired_port = Column(Integer, nullable=False)

    # Date à laquelle le set est passé en Retiring, puis date de suppression effective
    retiring_since = Column(DateTime, nullable=True)
    retired_at = Column(DateTime, nullable=True)

    artifact = relationship("Artifact", lazy="joined")

    @property
    def is_retired(self) -> bool:
        return self.retired_at is not None

    def __repr__(self):
        return f"<ReplicaSet(set_id='{self.set_id}', role='{self.role}', retired={self.is_retired})>"
