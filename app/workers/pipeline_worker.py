import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from app.repositories.pipeline_run_repository import PipelineRunRepository
from app.repositories.replica_set_repository import ReplicaSetRepository
from app.repositories.routing_state_repository import RoutingStateRepository
from app.services.replica_set_controller import ReplicaSetController

logger = logging.getLogger(__name__)


class PipelineWorker:
    """
    Tâche de fond: au démarrage, reprise des runs interrompus de chaque service;
    ensuite, retrait périodique des replica sets Retiring dont le délai de drain est écoulé.
    """

    def __init__(
            self,
            sequencer_factory: Callable,
            session_factory: sessionmaker,
            controller: ReplicaSetController,
            termination_wait: float = 60.0,
            interval: float = 60.0
    ):
        self.sequencer_factory = sequencer_factory
        self.session_factory = session_factory
        self.controller = controller
        self.termination_wait = termination_wait
        self.interval = interval
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self.last_run: Dict[str, Any] = {
            "timestamp": None,
            "recovered_runs": [],
            "retired_sets": [],
            "errors": []
        }

    async def start(self):
        """Démarre le worker"""
        if self.running:
            return

        self.running = True
        logger.info("Worker de pipeline démarré")

        try:
            self.last_run["recovered_runs"] = await self.recover_all()
        except Exception as e:
            logger.exception(f"Erreur pendant la reprise des runs: {e}")
            self.last_run["errors"].append(str(e))

        while self.running:
            try:
                await asyncio.sleep(self.interval)
                retired = await self.retire_expired()
                self.last_run["timestamp"] = datetime.utcnow().isoformat()
                self.last_run["retired_sets"] = retired
            except asyncio.CancelledError:
                logger.info("Worker annulé")
                break
            except Exception as e:
                logger.exception(f"Erreur dans la boucle du worker: {e}")
                self.last_run["errors"] = (self.last_run["errors"] + [str(e)])[-20:]

        logger.info("Worker de pipeline arrêté")

    def stop(self):
        self.running = False

    def is_healthy(self) -> bool:
        return self.running and self._task is not None and not self._task.done()

    def known_services(self) -> List[str]:
        with self.session_factory() as db:
            services = set(RoutingStateRepository(db).list_services())
            services.update(ReplicaSetRepository(db).known_services())
            services.update(PipelineRunRepository(db).services_with_runs_in_progress())
        return sorted(services)

    async def recover_all(self) -> List[str]:
        """Reprise des runs interrompus, service par service"""
        recovered = []
        for service_name in self.known_services():
            run_ids = await self.sequencer_factory(service_name).recover()
            if run_ids:
                logger.warning(f"[{service_name}] runs repris: {', '.join(run_ids)}")
            recovered.extend(run_ids)
        return recovered

    async def retire_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Retire les sets Retiring dont le drain est terminé et dont le service n'a pas de run actif"""
        now = now or datetime.utcnow()
        grace = timedelta(seconds=self.termination_wait)
        retired = []

        for replica_set in self.controller.retiring_sets():
            if replica_set.retiring_since and replica_set.retiring_since + grace > now:
                continue
            with self.session_factory() as db:
                state = RoutingStateRepository(db).get_by_field("service_name", replica_set.service_name)
            if state is not None and state.active_run_id is not None:
                continue
            await self.controller.retire(replica_set.set_id)
            retired.append(replica_set.set_id)

        if retired:
            logger.info(f"Sets retirés après drain: {', '.join(retired)}")
        return retired

    def status(self) -> Dict[str, Any]:
        has_task = self._task is not None
        task_done = self._task.done() if has_task else True
        return {
            "running": self.running,
            "healthy": self.is_healthy(),
            "task_exists": has_task,
            "task_done": task_done,
            "last_run": self.last_run,
            "status": "healthy" if self.is_healthy() else "unhealthy"
        }
