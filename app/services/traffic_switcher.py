"""
Machine à états blue/green d'un service.

Idle/Committed -> Deploying -> PreCheck -> AwaitingApproval -> Cutover -> PostCheck -> Committed,
avec une sortie vers RollingBack -> Idle depuis chaque état postérieur à Deploying.
Toute mutation de RoutingState passe par un compare-and-set, sous le verrou du service.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from app.core.exceptions import InvalidTransition, RoutingConflict
from app.external.platform import ProbeRoute
from app.models.artifact import Artifact
from app.models.replica_set import ReplicaSet, ReplicaSetRole
from app.models.routing_state import RoutingState, DeploymentPhase
from app.repositories.routing_state_repository import RoutingStateRepository
from app.services.health_gate import HealthGate, HealthProbe, HealthVerdict
from app.services.replica_set_controller import ReplicaSetController

logger = logging.getLogger(__name__)

P = DeploymentPhase

_ALLOWED_TRANSITIONS: Dict[DeploymentPhase, frozenset] = {
    P.IDLE: frozenset({P.DEPLOYING}),
    P.COMMITTED: frozenset({P.DEPLOYING, P.IDLE}),
    P.DEPLOYING: frozenset({P.PRE_CHECK, P.IDLE, P.ROLLING_BACK}),
    P.PRE_CHECK: frozenset({P.AWAITING_APPROVAL, P.ROLLING_BACK}),
    P.AWAITING_APPROVAL: frozenset({P.CUTOVER, P.ROLLING_BACK}),
    P.CUTOVER: frozenset({P.POST_CHECK, P.ROLLING_BACK}),
    P.POST_CHECK: frozenset({P.COMMITTED, P.ROLLING_BACK}),
    P.ROLLING_BACK: frozenset({P.IDLE}),
}

# Phases à partir desquelles le trafic public peut déjà pointer sur le candidat
POST_CUTOVER_PHASES = frozenset({P.CUTOVER, P.POST_CHECK, P.COMMITTED})


def can_transition(current: DeploymentPhase, nxt: DeploymentPhase) -> bool:
    return nxt in _ALLOWED_TRANSITIONS[current]


class TrafficSwitcher:
    """Propriétaire de l'affectation live/candidate du point d'entrée d'un service"""

    def __init__(
            self,
            service_name: str,
            controller: ReplicaSetController,
            health_gate: HealthGate,
            session_factory: sessionmaker
    ):
        self.service_name = service_name
        self.controller = controller
        self.health_gate = health_gate
        self.session_factory = session_factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def exclusive(self):
        async with self._lock:
            yield

    def load_state(self) -> RoutingState:
        with self.session_factory() as db:
            return RoutingStateRepository(db).get_or_create(self.service_name)

    def apply_transition(
            self,
            state: RoutingState,
            phase: Optional[DeploymentPhase] = None,
            **changes: Any
    ) -> RoutingState:
        """Valide puis persiste une transition (appelant sous le verrou)"""
        if phase is not None and phase != state.phase:
            if not can_transition(state.phase, phase):
                raise InvalidTransition(
                    f"{self.service_name}: {state.phase.value} -> {phase.value} is not allowed"
                )
            changes["phase"] = phase

        with self.session_factory() as db:
            updated = RoutingStateRepository(db).compare_and_set(state, changes)

        if phase is not None and phase != state.phase:
            logger.info(f"[{self.service_name}] {state.phase.value} -> {phase.value}")
        return updated

    def _require(self, state: RoutingState, run_id: str, *phases: DeploymentPhase) -> None:
        if state.active_run_id != run_id:
            logger.critical(
                f"[{self.service_name}] run {run_id} agit sur un état détenu par {state.active_run_id}"
            )
            raise RoutingConflict(
                f"Routing state of '{self.service_name}' is owned by run {state.active_run_id}, not {run_id}"
            )
        if phases and state.phase not in phases:
            raise InvalidTransition(
                f"{self.service_name}: expected {'/'.join(p.value for p in phases)}, got {state.phase.value}"
            )

    def route_entry_point(self, set_id: Optional[str]) -> None:
        self.controller.platform.route_entry_point(self.service_name, set_id)

    # --- transitions ---

    async def begin_deploy(
            self,
            run_id: str,
            artifact: Artifact,
            instance_count: int,
            port: int
    ) -> ReplicaSet:
        """Idle -> Deploying, puis création du candidat (aucun trafic)"""
        async with self.exclusive():
            state = self.load_state()
            if state.active_run_id not in (None, run_id):
                raise RoutingConflict(f"'{self.service_name}' already driven by run {state.active_run_id}")
            self.apply_transition(state, P.DEPLOYING, active_run_id=run_id, candidate_set_id=None)

        try:
            candidate = await self.controller.create(self.service_name, artifact, instance_count, port)
        except Exception:
            # Le controller a déjà retiré le set incomplet
            async with self.exclusive():
                state = self.load_state()
                self._require(state, run_id, P.DEPLOYING)
                self.apply_transition(state, P.IDLE, active_run_id=None, candidate_set_id=None)
            raise

        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.DEPLOYING)
            self.apply_transition(state, candidate_set_id=candidate.set_id)
        return candidate

    async def pre_check(
            self,
            run_id: str,
            probe: HealthProbe,
            timeout: float,
            interval: float,
            required_passes: int
    ) -> HealthVerdict:
        """Deploying -> PreCheck, health check sur le listener de test"""
        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.DEPLOYING)
            state = self.apply_transition(state, P.PRE_CHECK)
        candidate_id = state.candidate_set_id

        verdict = await self.health_gate.check(
            candidate_id, probe, timeout, interval, required_passes, route=ProbeRoute.TEST
        )

        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.PRE_CHECK)
            if verdict == HealthVerdict.HEALTHY:
                self.apply_transition(state, P.AWAITING_APPROVAL)
            else:
                logger.warning(f"[{self.service_name}] pre-check de {candidate_id}: {verdict.value}")
                self.apply_transition(state, P.ROLLING_BACK)
        return verdict

    async def cutover(self, run_id: str) -> RoutingState:
        """AwaitingApproval -> Cutover: bascule atomique du point d'entrée public sur le candidat"""
        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.AWAITING_APPROVAL)
            state = self.apply_transition(state, P.CUTOVER)

            candidate_id = state.candidate_set_id
            old_live_id = state.live_set_id

            await asyncio.to_thread(self.route_entry_point, candidate_id)
            self.controller.set_role(candidate_id, ReplicaSetRole.BLUE)
            if old_live_id:
                self.controller.set_role(old_live_id, ReplicaSetRole.RETIRING)

            state = self.apply_transition(
                state,
                live_set_id=candidate_id,
                previous_live_set_id=old_live_id
            )
        logger.info(
            f"[{self.service_name}] cutover: {old_live_id or 'bootstrap'} -> {candidate_id}"
        )
        return state

    async def post_check(
            self,
            run_id: str,
            probe: HealthProbe,
            timeout: float,
            interval: float,
            required_passes: int
    ) -> HealthVerdict:
        """Cutover -> PostCheck, health check du nouveau live via le point d'entrée public"""
        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.CUTOVER, P.POST_CHECK)
            if state.phase == P.CUTOVER:
                state = self.apply_transition(state, P.POST_CHECK)
        live_id = state.live_set_id

        verdict = await self.health_gate.check(
            live_id, probe, timeout, interval, required_passes, route=ProbeRoute.PUBLIC
        )

        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.POST_CHECK)
            if verdict == HealthVerdict.HEALTHY:
                self.apply_transition(state, P.COMMITTED)
            else:
                logger.warning(f"[{self.service_name}] post-check de {live_id}: {verdict.value}")
                self.apply_transition(state, P.ROLLING_BACK)
        return verdict

    async def commit(self, run_id: str, termination_wait: float) -> RoutingState:
        """
        Retire l'ancien live après le délai de drain et libère l'état.
        Le cutover est acquis: un échec du retrait laisse l'ancien set en Retiring pour le janitor,
        l'état est libéré dans tous les cas.
        """
        state = self.load_state()
        self._require(state, run_id, P.COMMITTED)

        if state.previous_live_set_id and termination_wait > 0:
            logger.info(
                f"[{self.service_name}] drain de {state.previous_live_set_id} pendant {termination_wait}s"
            )
            await asyncio.sleep(termination_wait)

        async with self.exclusive():
            state = self.load_state()
            self._require(state, run_id, P.COMMITTED)
            previous_id = state.previous_live_set_id
            try:
                if previous_id:
                    await self.controller.retire(previous_id)
            except Exception as e:
                logger.error(f"[{self.service_name}] retrait de {previous_id} différé: {e}")
            finally:
                state = self.apply_transition(
                    state,
                    candidate_set_id=None,
                    previous_live_set_id=None,
                    active_run_id=None
                )
        return state

