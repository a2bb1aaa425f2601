from typing import List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from app.repositories.base_repository import BaseRepository
from app.models.replica_set import ReplicaSet, ReplicaSetRole


class ReplicaSetRepository(BaseRepository[ReplicaSet]):
    def __init__(self, db: Session):
        super().__init__(ReplicaSet, db)

    def get_by_set_id(self, set_id: str) -> Optional[ReplicaSet]:
        return self.get_by_field("set_id", set_id)

    def get_retiring(self, service_name: Optional[str] = None) -> List[ReplicaSet]:
        """Replica sets en attente de suppression"""
        query = self.db.query(ReplicaSet).filter(
            ReplicaSet.role == ReplicaSetRole.RETIRING,
            ReplicaSet.retired_at.is_(None)
        )
        if service_name:
            query = query.filter(ReplicaSet.service_name == service_name)
        return query.order_by(ReplicaSet.id).all()

    def set_role(self, set_id: str, role: ReplicaSetRole) -> Optional[ReplicaSet]:
        try:
            replica_set = self.get_by_set_id(set_id)
            if replica_set is None:
                return None
            replica_set.role = role
            replica_set.retiring_since = datetime.utcnow() if role == ReplicaSetRole.RETIRING else None
            self.db.commit()
            return replica_set
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def mark_retired(self, set_id: str) -> Optional[ReplicaSet]:
        try:
            replica_set = self.get_by_set_id(set_id)
            if replica_set is None or replica_set.retired_at is not None:
                return replica_set
            if replica_set.role != ReplicaSetRole.RETIRING:
                replica_set.role = ReplicaSetRole.RETIRING
                replica_set.retiring_since = datetime.utcnow()
            replica_set.retired_at = datetime.utcnow()
            self.db.commit()
            return replica_set
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def known_services(self) -> List[str]:
        rows = self.db.query(ReplicaSet.service_name).distinct().all()
        return [row[0] for row in rows]
