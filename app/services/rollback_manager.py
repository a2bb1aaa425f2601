import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.core.exceptions import RoutingConflict
from app.models.pipeline_run import StageName, StageOutcome
from app.models.replica_set import ReplicaSetRole
from app.models.routing_state import RoutingState, DeploymentPhase
from app.repositories.pipeline_run_repository import PipelineRunRepository
from app.services.traffic_switcher import TrafficSwitcher, POST_CUTOVER_PHASES

logger = logging.getLogger(__name__)


class RollbackManager:
    """Remet le live précédent comme unique cible du trafic et retire le candidat"""

    def __init__(self, switcher: TrafficSwitcher, session_factory: sessionmaker):
        self.switcher = switcher
        self.session_factory = session_factory

    async def rollback(self, run_id: Optional[str] = None, reason: str = "") -> RoutingState:
        """
        Idempotent: sur un état déjà revenu à Idle (ou commité), ne fait rien.
        Exécuté entièrement sous le verrou du service, il ne s'entrelace jamais avec un cutover.
        """
        started_at = datetime.utcnow()
        switcher = self.switcher

        async with switcher.exclusive():
            state = switcher.load_state()
            if run_id is not None and state.active_run_id not in (None, run_id):
                raise RoutingConflict(
                    f"Rollback of run {run_id} on '{switcher.service_name}' owned by {state.active_run_id}"
                )
            if state.phase in (DeploymentPhase.IDLE, DeploymentPhase.COMMITTED) or state.active_run_id is None:
                logger.debug(f"[{switcher.service_name}] rien à annuler ({state.phase.value})")
                return state

            initial_phase = state.phase
            logger.warning(
                f"[{switcher.service_name}] rollback depuis {initial_phase.value}: {reason or 'sans motif'}"
            )
            if state.phase != DeploymentPhase.ROLLING_BACK:
                state = switcher.apply_transition(state, DeploymentPhase.ROLLING_BACK)

            candidate_id = state.candidate_set_id
            cut_over = candidate_id is not None and state.live_set_id == candidate_id
            stable_id = state.previous_live_set_id if cut_over else state.live_set_id

            if cut_over or initial_phase in POST_CUTOVER_PHASES:
                # Un seul appel: le trafic revient en bloc sur l'ancien live (ou est détaché au bootstrap)
                await asyncio.to_thread(switcher.route_entry_point, stable_id)
                logger.warning(f"[{switcher.service_name}] trafic public rendu à {stable_id or 'aucun set'}")
            if stable_id:
                switcher.controller.set_role(stable_id, ReplicaSetRole.BLUE)

            if candidate_id:
                await asyncio.to_thread(
                    switcher.controller.platform.route_test_listener, switcher.service_name, None
                )
                await switcher.controller.retire(candidate_id)

            state = switcher.apply_transition(
                state,
                DeploymentPhase.IDLE,
                live_set_id=stable_id,
                candidate_set_id=None,
                previous_live_set_id=None,
                active_run_id=None
            )

        if run_id is not None:
            self._record(run_id, started_at, candidate_id, stable_id, reason)
        return state

    def _record(self, run_id: str, started_at: datetime, candidate_id: Optional[str],
                stable_id: Optional[str], reason: str) -> None:
        detail = f"candidate {candidate_id or '-'} retired, live {stable_id or '-'}"
        if reason:
            detail = f"{reason}; {detail}"
        with self.session_factory() as db:
            repo = PipelineRunRepository(db)
            run = repo.get_by_run_id(run_id)
            if run is None or run.is_terminal:
                return
            repo.append_stage(
                run_id,
                StageName.ROLLBACK.value,
                StageOutcome.ROLLED_BACK,
                started_at,
                detail=detail
            )
