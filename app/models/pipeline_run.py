from sqlalchemy import Column, String, Integer, DateTime, Text, Enum, ForeignKey
from sqlalchemy.orm import relationship
import enum
from .base import BaseModel


class RunOutcome(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class StageOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class StageName(str, enum.Enum):
    SOURCE = "Source"
    BUILD = "Build"
    DEPLOY = "Deploy"
    PRE_CHECK = "PreCheck"
    APPROVAL = "Approval"
    CUTOVER = "Cutover"
    POST_CHECK = "PostCheck"
    COMMIT = "Commit"
    ROLLBACK = "Rollback"


class PipelineRun(BaseModel):
    __tablename__ = "pipeline_runs"

    run_id = Column(String(64), unique=True, nullable=False, index=True)
    service_name = Column(String(255), nullable=False, index=True)
    source_revision = Column(String(255), nullable=False)
    revision_id = Column(String(128), nullable=True)

    outcome = Column(Enum(RunOutcome), default=RunOutcome.IN_PROGRESS, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)

    stages = relationship(
        "StageResult",
        back_populates="run",
        order_by="StageResult.sequence",
        lazy="selectin",
        cascade="all, delete-orphan"
    )

    @property
    def is_terminal(self) -> bool:
        return self.outcome != RunOutcome.IN_PROGRESS

    def stage_names(self):
        return [stage.name for stage in self.stages]

    def __repr__(self):
        return f"<PipelineRun(run_id='{self.run_id}', service='{self.service_name}', outcome='{self.outcome}')>"


class StageResult(BaseModel):
    __tablename__ = "stage_results"

    run_pk = Column(Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    name = Column(String(50), nullable=False)
    outcome = Column(Enum(StageOutcome), nullable=False)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False)
    detail = Column(Text, nullable=True)

    run = relationship("PipelineRun", back_populates="stages")
