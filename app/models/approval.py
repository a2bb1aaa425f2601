from sqlalchemy import Column, String, DateTime, Text, Enum
import enum
from .base import BaseModel


class DecisionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(BaseModel):
    __tablename__ = "approval_decisions"

    run_id = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(Enum(DecisionStatus), default=DecisionStatus.PENDING, nullable=False)

    requested_at = Column(DateTime, nullable=False)
    deadline = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decided_by = Column(String(100), nullable=True)

    comment = Column(Text, nullable=True)
    reason = Column(String(50), nullable=True)  # manual, timeout

    @property
    def is_terminal(self) -> bool:
        return self.status != DecisionStatus.PENDING
