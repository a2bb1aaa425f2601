from typing import Any, Dict, List
from datetime import datetime
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from app.repositories.base_repository import BaseRepository
from app.models.routing_state import RoutingState, DeploymentPhase
from app.core.exceptions import RoutingConflict

logger = logging.getLogger(__name__)


class RoutingStateRepository(BaseRepository[RoutingState]):
    """Accès à l'état de routage, muté uniquement par compare-and-set"""

    def __init__(self, db: Session):
        super().__init__(RoutingState, db)

    def get_or_create(self, service_name: str) -> RoutingState:
        state = self.get_by_field("service_name", service_name)
        if state is not None:
            return state
        try:
            return self.create({
                "service_name": service_name,
                "phase": DeploymentPhase.IDLE,
                "version": 0
            })
        except IntegrityError:
            # Créé entre-temps par une autre session
            return self.get_by_field("service_name", service_name)

    def compare_and_set(self, state: RoutingState, changes: Dict[str, Any]) -> RoutingState:
        """
        Applique `changes` si la version en base est toujours celle de `state`.
        Lève RoutingConflict sinon.
        """
        values = dict(changes)
        values["version"] = state.version + 1
        values["updated_at"] = datetime.utcnow()
        try:
            updated = (self.db.query(RoutingState)
                       .filter(RoutingState.id == state.id, RoutingState.version == state.version)
                       .update(values, synchronize_session=False))
            if updated != 1:
                self.db.rollback()
                logger.critical(
                    f"Conflit de routage sur {state.service_name}: version attendue {state.version}"
                )
                raise RoutingConflict(
                    f"Routing state for '{state.service_name}' changed concurrently "
                    f"(expected version {state.version})"
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

        self.db.expire_all()
        return self.get_by_id(state.id)

    def list_services(self) -> List[str]:
        return [row[0] for row in self.db.query(RoutingState.service_name).all()]
