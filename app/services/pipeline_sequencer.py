"""
Séquenceur de pipeline d'un service.

Source -> Build -> Deploy -> PreCheck -> Approval -> Cutover -> PostCheck -> Commit,
chaque étape écrivant son StageResult avant que la suivante ne commence.
Un seul run actif par service: un second déclenchement est refusé (RunInProgress), jamais mis en file.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from app.core.exceptions import (
    ApprovalRejected,
    ApprovalTimeout,
    BuildFailure,
    CancellationNotAllowed,
    DuplicateRevision,
    HealthCheckFailure,
    NotFound,
    ProvisioningError,
    RoutingConflict,
    RunInProgress,
)
from app.models.approval import DecisionStatus
from app.models.artifact import Artifact
from app.models.pipeline_run import PipelineRun, RunOutcome, StageName, StageOutcome
from app.models.routing_state import DeploymentPhase
from app.repositories.pipeline_run_repository import PipelineRunRepository
from app.services.approval_gate import ApprovalGate, REASON_TIMEOUT
from app.services.artifact_registry import ArtifactRegistry
from app.services.build_collaborator import BuildCollaborator
from app.services.health_gate import HealthProbe, HealthVerdict
from app.services.replica_set_controller import ReplicaSetController
from app.services.rollback_manager import RollbackManager
from app.services.traffic_switcher import TrafficSwitcher

logger = logging.getLogger(__name__)

P = DeploymentPhase

CANCELLABLE_PHASES = frozenset({P.IDLE, P.DEPLOYING, P.PRE_CHECK})

# Phases où un run interrompu par un redémarrage est annulé plutôt que repris
ROLLBACK_ON_RECOVERY = frozenset({P.IDLE, P.DEPLOYING, P.PRE_CHECK, P.CUTOVER, P.ROLLING_BACK})


@dataclass
class DeploymentSettings:
    instance_count: int = 1
    container_port: int = 8080
    probe: HealthProbe = field(default_factory=HealthProbe)
    health_interval: float = 30.0
    required_passes: int = 3
    pre_check_timeout: float = 300.0
    post_check_timeout: float = 300.0
    approval_timeout: Optional[float] = 7 * 24 * 3600.0
    termination_wait: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "DeploymentSettings":
        return cls(
            instance_count=settings.DEFAULT_INSTANCE_COUNT,
            container_port=settings.CONTAINER_PORT,
            probe=HealthProbe(
                path=settings.HEALTH_CHECK_PATH,
                probe_timeout=settings.HEALTH_CHECK_PROBE_TIMEOUT_SECONDS,
                start_period=settings.HEALTH_CHECK_START_PERIOD_SECONDS,
                unhealthy_threshold=settings.HEALTH_CHECK_UNHEALTHY_THRESHOLD
            ),
            health_interval=settings.HEALTH_CHECK_INTERVAL_SECONDS,
            required_passes=settings.HEALTH_CHECK_REQUIRED_PASSES,
            pre_check_timeout=settings.PRE_CHECK_TIMEOUT_SECONDS,
            post_check_timeout=settings.POST_CHECK_TIMEOUT_SECONDS,
            approval_timeout=settings.APPROVAL_TIMEOUT_SECONDS,
            termination_wait=settings.TERMINATION_WAIT_SECONDS
        )


@dataclass
class _StageRecord:
    started_at: datetime
    detail: Optional[str] = None


class _RunCancelled(Exception):
    pass


class _RunInterrupted(Exception):
    """Run repris après redémarrage dans une phase qui impose un rollback"""

    def __init__(self, message: str, had_candidate: bool):
        super().__init__(message)
        self.had_candidate = had_candidate


class PipelineSequencer:

    def __init__(
            self,
            service_name: str,
            registry: ArtifactRegistry,
            controller: ReplicaSetController,
            switcher: TrafficSwitcher,
            approval_gate: ApprovalGate,
            rollback_manager: RollbackManager,
            build_collaborator: BuildCollaborator,
            session_factory: sessionmaker,
            deployment: Optional[DeploymentSettings] = None
    ):
        self.service_name = service_name
        self.registry = registry
        self.controller = controller
        self.switcher = switcher
        self.approval_gate = approval_gate
        self.rollback_manager = rollback_manager
        self.build_collaborator = build_collaborator
        self.session_factory = session_factory
        self.deployment = deployment or DeploymentSettings()

        self._active_run_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()
        self._cancelled_by: Optional[str] = None

    @property
    def active_run_id(self) -> Optional[str]:
        return self._active_run_id

    # --- déclenchement ---

    async def on_new_revision(self, source_revision: str) -> str:
        """Point d'entrée webhook: réserve le service et lance le run en tâche de fond"""
        run = self._reserve(source_revision)
        self._task = asyncio.create_task(self._drive(run.run_id, self._full_pipeline(run.run_id, source_revision)))
        self._task.add_done_callback(self._log_task_failure)
        return run.run_id

    async def run(self, source_revision: str) -> PipelineRun:
        """Exécute un run complet et retourne son journal"""
        run = self._reserve(source_revision)
        await self._drive(run.run_id, self._full_pipeline(run.run_id, source_revision))
        return self.get_run(run.run_id)

    async def join(self) -> None:
        """Attend la fin du run lancé en tâche de fond, s'il y en a un"""
        if self._task is not None and not self._task.done():
            await asyncio.wait([self._task])

    def _reserve(self, source_revision: str) -> PipelineRun:
        if self._active_run_id is not None:
            raise RunInProgress(f"Run {self._active_run_id} is already in progress for '{self.service_name}'")

        with self.session_factory() as db:
            repo = PipelineRunRepository(db)
            in_progress = repo.get_in_progress(self.service_name)
            if in_progress:
                raise RunInProgress(
                    f"Run {in_progress[0].run_id} is still in progress for '{self.service_name}'"
                )
            run = repo.create({
                "run_id": uuid.uuid4().hex,
                "service_name": self.service_name,
                "source_revision": source_revision or "",
                "outcome": RunOutcome.IN_PROGRESS
            })

        self._active_run_id = run.run_id
        self._cancel_event.clear()
        self._cancelled_by = None
        logger.info(f"[{self.service_name}] run {run.run_id} démarré pour la révision {source_revision!r}")
        return run

    # --- consultation ---

    def get_run(self, run_id: str) -> PipelineRun:
        with self.session_factory() as db:
            run = PipelineRunRepository(db).get_by_run_id(run_id)
        if run is None or run.service_name != self.service_name:
            raise NotFound(f"Pipeline run '{run_id}' not found for '{self.service_name}'")
        return run

    def list_runs(self, limit: int = 50) -> List[PipelineRun]:
        with self.session_factory() as db:
            return PipelineRunRepository(db).get_recent(self.service_name, limit)

    # --- annulation ---

    def cancel(self, run_id: str, requested_by: Optional[str] = None) -> None:
        """Annulation coopérative, autorisée seulement avant le cutover"""
        run = self.get_run(run_id)
        if run.is_terminal:
            raise CancellationNotAllowed(f"Run '{run_id}' is already {run.outcome.value}")
        if run_id != self._active_run_id:
            raise CancellationNotAllowed(f"Run '{run_id}' is not driven by this orchestrator")

        state = self.switcher.load_state()
        if state.active_run_id == run_id and state.phase not in CANCELLABLE_PHASES:
            raise CancellationNotAllowed(
                f"Run '{run_id}' is in {state.phase.value}; it must run to a terminal state"
            )

        self._cancelled_by = requested_by
        self._cancel_event.set()
        logger.info(f"[{self.service_name}] annulation du run {run_id} demandée par {requested_by or 'inconnu'}")

    def _check_cancel(self) -> None:
        if self._cancel_event.is_set():
            raise _RunCancelled(f"cancelled by {self._cancelled_by or 'unknown'}")

    # --- exécution ---

    @asynccontextmanager
    async def _stage(self, run_id: str, name: StageName):
        record = _StageRecord(started_at=datetime.utcnow())
        try:
            yield record
        except _RunCancelled as e:
            self._append(run_id, name, StageOutcome.CANCELLED, record.started_at, str(e))
            raise
        except Exception as e:
            self._append(run_id, name, StageOutcome.FAILED, record.started_at, str(e) or type(e).__name__)
            raise
        else:
            self._append(run_id, name, StageOutcome.SUCCEEDED, record.started_at, record.detail)

    def _append(self, run_id: str, name: StageName, outcome: StageOutcome,
                started_at: datetime, detail: Optional[str]) -> None:
        with self.session_factory() as db:
            PipelineRunRepository(db).append_stage(run_id, name.value, outcome, started_at, detail=detail)
        log = logger.info if outcome == StageOutcome.SUCCEEDED else logger.warning
        log(f"[{self.service_name}] {run_id} {name.value}: {outcome.value}{f' ({detail})' if detail else ''}")

    async def _drive(self, run_id: str, steps) -> RunOutcome:
        """Exécute `steps` et traduit chaque issue en outcome du run"""
        outcome = RunOutcome.FAILED
        try:
            await steps
            outcome = RunOutcome.SUCCEEDED
        except (HealthCheckFailure, ApprovalRejected) as e:
            await self.rollback_manager.rollback(run_id, reason=str(e))
            outcome = RunOutcome.ROLLED_BACK
        except _RunInterrupted as e:
            await self.rollback_manager.rollback(run_id, reason=str(e))
            outcome = RunOutcome.ROLLED_BACK if e.had_candidate else RunOutcome.FAILED
        except _RunCancelled as e:
            await self.rollback_manager.rollback(run_id, reason=str(e))
        except (ValueError, BuildFailure, DuplicateRevision, NotFound, ProvisioningError) as e:
            # Pas d'arête de rollback: l'état de routage est resté à Idle
            logger.error(f"[{self.service_name}] run {run_id} en échec: {e}")
        except RoutingConflict:
            logger.critical(f"[{self.service_name}] conflit de routage pendant le run {run_id}")
            self._finish(run_id, RunOutcome.FAILED)
            raise
        except Exception as e:
            logger.exception(f"[{self.service_name}] erreur inattendue pendant le run {run_id}: {e}")
            if self.switcher.load_state().active_run_id == run_id:
                await self.rollback_manager.rollback(run_id, reason=f"unexpected error: {e}")
        finally:
            if self._active_run_id == run_id:
                self._active_run_id = None

        self._finish(run_id, outcome)
        return outcome

    def _finish(self, run_id: str, outcome: RunOutcome) -> None:
        with self.session_factory() as db:
            PipelineRunRepository(db).finish(run_id, outcome)
        logger.info(f"[{self.service_name}] run {run_id} terminé: {outcome.value}")

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.critical(f"[{self.service_name}] run interrompu: {error!r}")

    async def _full_pipeline(self, run_id: str, source_revision: str) -> None:
        revision = await self._source(run_id, source_revision)
        artifact = await self._build(run_id, revision)
        await self._deploy(run_id, artifact)
        await self._pre_check(run_id)
        await self._from_approval(run_id)

    async def _from_approval(self, run_id: str) -> None:
        await self._approval(run_id)
        await self._cutover(run_id)
        await self._from_post_check(run_id)

    async def _from_post_check(self, run_id: str) -> None:
        await self._post_check(run_id)
        await self._commit(run_id)

    async def _source(self, run_id: str, source_revision: str) -> str:
        async with self._stage(run_id, StageName.SOURCE) as stage:
            self._check_cancel()
            revision = (source_revision or "").strip()
            if not revision:
                raise ValueError("source revision is empty")
            stage.detail = revision
        return revision

    async def _build(self, run_id: str, revision: str) -> Artifact:
        async with self._stage(run_id, StageName.BUILD) as stage:
            self._check_cancel()
            revision_id, image_reference = await self.build_collaborator.build(self.service_name, revision)
            artifact = self.registry.register(revision_id, image_reference)
            with self.session_factory() as db:
                repo = PipelineRunRepository(db)
                repo.update_fields(repo.get_by_run_id(run_id), {"revision_id": artifact.revision_id})
            stage.detail = artifact.image_reference
        return artifact

    async def _deploy(self, run_id: str, artifact: Artifact) -> None:
        async with self._stage(run_id, StageName.DEPLOY) as stage:
            self._check_cancel()
            await self._retire_leftovers()
            candidate = await self.switcher.begin_deploy(
                run_id, artifact, self.deployment.instance_count, self.deployment.container_port
            )
            stage.detail = f"candidate {candidate.set_id} ({candidate.instance_count} instances)"

    async def _retire_leftovers(self) -> None:
        """Retire un ancien live resté en Retiring après un run précédent"""
        state = self.switcher.load_state()
        for replica_set in self.controller.retiring_sets(self.service_name):
            if replica_set.set_id in (state.live_set_id, state.previous_live_set_id):
                continue
            logger.info(f"[{self.service_name}] retrait du set résiduel {replica_set.set_id}")
            await self.controller.retire(replica_set.set_id)

    async def _pre_check(self, run_id: str) -> None:
        d = self.deployment
        async with self._stage(run_id, StageName.PRE_CHECK) as stage:
            self._check_cancel()
            verdict = await self.switcher.pre_check(
                run_id, d.probe, d.pre_check_timeout, d.health_interval, d.required_passes
            )
            if verdict != HealthVerdict.HEALTHY:
                raise HealthCheckFailure(f"pre-check {verdict.value}")
            stage.detail = verdict.value

    async def _approval(self, run_id: str) -> None:
        timeout = self.deployment.approval_timeout
        async with self._stage(run_id, StageName.APPROVAL) as stage:
            self._check_cancel()
            deadline = datetime.utcnow() + timedelta(seconds=timeout) if timeout is not None else None
            decision = await self.approval_gate.request(run_id, deadline)
            if decision.status != DecisionStatus.APPROVED:
                if decision.reason == REASON_TIMEOUT:
                    raise ApprovalTimeout("approval timed out")
                raise ApprovalRejected(f"rejected by {decision.decided_by or 'unknown'}")
            stage.detail = f"approved by {decision.decided_by or 'unknown'}"

    async def _cutover(self, run_id: str) -> None:
        async with self._stage(run_id, StageName.CUTOVER) as stage:
            state = await self.switcher.cutover(run_id)
            stage.detail = f"{state.previous_live_set_id or 'bootstrap'} -> {state.live_set_id}"

    async def _post_check(self, run_id: str) -> None:
        d = self.deployment
        async with self._stage(run_id, StageName.POST_CHECK) as stage:
            verdict = await self.switcher.post_check(
                run_id, d.probe, d.post_check_timeout, d.health_interval, d.required_passes
            )
            if verdict != HealthVerdict.HEALTHY:
                raise HealthCheckFailure(f"post-check {verdict.value}")
            stage.detail = verdict.value

    async def _commit(self, run_id: str) -> None:
        async with self._stage(run_id, StageName.COMMIT) as stage:
            previous = self.switcher.load_state().previous_live_set_id
            state = await self.switcher.commit(run_id, self.deployment.termination_wait)
            if previous and not self.controller.get(previous).is_retired:
                stage.detail = f"live {state.live_set_id}, {previous} still retiring"
            else:
                stage.detail = f"live {state.live_set_id}, retired {previous or '-'}"

    # --- reprise après redémarrage ---

    async def recover(self) -> List[str]:
        """
        Re-dérive les runs interrompus à partir des StageResults et de RoutingState.phase.
        Retourne les run_id traités; un run repris continue en tâche de fond.
        """
        with self.session_factory() as db:
            runs = PipelineRunRepository(db).get_in_progress(self.service_name)
        state = self.switcher.load_state()
        recovered = []

        for run in runs:
            if run.run_id == self._active_run_id:
                continue
            recovered.append(run.run_id)

            if state.active_run_id != run.run_id:
                self._settle_orphan(run)
                continue

            logger.warning(f"[{self.service_name}] reprise du run {run.run_id} en phase {state.phase.value}")
            self._active_run_id = run.run_id
            self._cancel_event.clear()
            self._task = asyncio.create_task(self._drive(run.run_id, self._resume(run.run_id, state.phase)))
            self._task.add_done_callback(self._log_task_failure)

        return recovered

    async def _resume(self, run_id: str, phase: DeploymentPhase) -> None:
        if phase in ROLLBACK_ON_RECOVERY:
            had_candidate = self.switcher.load_state().candidate_set_id is not None
            raise _RunInterrupted(f"interrupted during {phase.value}", had_candidate)
        if phase == P.AWAITING_APPROVAL:
            await self._from_approval(run_id)
        elif phase == P.POST_CHECK:
            await self._from_post_check(run_id)
        else:
            await self._commit(run_id)

    def _settle_orphan(self, run: PipelineRun) -> None:
        """Run en cours sans état de routage associé: il a déjà relâché le service"""
        succeeded = {s.name for s in run.stages if s.outcome == StageOutcome.SUCCEEDED}
        state = self.switcher.load_state()
        if StageName.POST_CHECK.value in succeeded and state.phase == P.COMMITTED:
            self._append(run.run_id, StageName.COMMIT, StageOutcome.SUCCEEDED, datetime.utcnow(), "recovered")
            self._finish(run.run_id, RunOutcome.SUCCEEDED)
        elif StageName.DEPLOY.value in succeeded:
            if StageName.ROLLBACK.value not in run.stage_names():
                self._append(run.run_id, StageName.ROLLBACK, StageOutcome.ROLLED_BACK, datetime.utcnow(), "recovered")
            self._finish(run.run_id, RunOutcome.ROLLED_BACK)
        else:
            self._finish(run.run_id, RunOutcome.FAILED)
