from typing import Optional
from sqlalchemy.orm import Session
from app.repositories.base_repository import BaseRepository
from app.models.approval import ApprovalDecision, DecisionStatus


class ApprovalRepository(BaseRepository[ApprovalDecision]):
    def __init__(self, db: Session):
        super().__init__(ApprovalDecision, db)

    def get_by_run_id(self, run_id: str) -> Optional[ApprovalDecision]:
        return self.get_by_field("run_id", run_id)

    def get_pending(self):
        return self.get_many_by_field("status", DecisionStatus.PENDING)
