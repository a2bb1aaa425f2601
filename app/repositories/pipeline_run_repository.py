from typing import List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from app.repositories.base_repository import BaseRepository
from app.models.pipeline_run import PipelineRun, StageResult, RunOutcome, StageOutcome
from app.core.exceptions import RunFinalized, NotFound


class PipelineRunRepository(BaseRepository[PipelineRun]):
    """Journal append-only des runs de pipeline"""

    def __init__(self, db: Session):
        super().__init__(PipelineRun, db)

    def get_by_run_id(self, run_id: str) -> Optional[PipelineRun]:
        return self.get_by_field("run_id", run_id)

    def get_in_progress(self, service_name: str) -> List[PipelineRun]:
        return (self.db.query(PipelineRun)
                .filter(PipelineRun.service_name == service_name,
                        PipelineRun.outcome == RunOutcome.IN_PROGRESS)
                .order_by(PipelineRun.id)
                .all())

    def get_recent(self, service_name: str, limit: int = 50) -> List[PipelineRun]:
        return (self.db.query(PipelineRun)
                .filter(PipelineRun.service_name == service_name)
                .order_by(PipelineRun.id.desc())
                .limit(limit)
                .all())

    def append_stage(
            self,
            run_id: str,
            name: str,
            outcome: StageOutcome,
            started_at: datetime,
            finished_at: Optional[datetime] = None,
            detail: Optional[str] = None
    ) -> StageResult:
        """Ajoute un StageResult; refusé si le run est terminé"""
        run = self.get_by_run_id(run_id)
        if run is None:
            raise NotFound(f"Pipeline run '{run_id}' not found")
        if run.is_terminal:
            raise RunFinalized(f"Pipeline run '{run_id}' is already {run.outcome.value}")

        try:
            stage = StageResult(
                run_pk=run.id,
                sequence=len(run.stages) + 1,
                name=name,
                outcome=outcome,
                started_at=started_at,
                finished_at=finished_at or datetime.utcnow(),
                detail=detail
            )
            self.db.add(stage)
            self.db.commit()
            self.db.refresh(run)
            return stage
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def finish(self, run_id: str, outcome: RunOutcome) -> PipelineRun:
        run = self.get_by_run_id(run_id)
        if run is None:
            raise NotFound(f"Pipeline run '{run_id}' not found")
        if run.is_terminal:
            raise RunFinalized(f"Pipeline run '{run_id}' is already {run.outcome.value}")
        return self.update_fields(run, {"outcome": outcome, "finished_at": datetime.utcnow()})

    def services_with_runs_in_progress(self) -> List[str]:
        rows = (self.db.query(PipelineRun.service_name)
                .filter(PipelineRun.outcome == RunOutcome.IN_PROGRESS)
                .distinct()
                .all())
        return [row[0] for row in rows]
