"""
Health gate: sondage concurrent des instances d'un replica set.

Chaque instance est suivie par sa propre coroutine; le verdict du set n'est
calculé qu'une fois toutes les coroutines terminées (barrière asyncio.gather).
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.external.platform import InstanceRef, ProbeRoute
from app.external.probe_client import ProbeClient
from app.services.replica_set_controller import ReplicaSetController

logger = logging.getLogger(__name__)


class HealthVerdict(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class HealthProbe:
    path: str = "/"
    probe_timeout: float = 5.0
    # Les échecs dans cette fenêtre ne comptent pas pour unhealthy_threshold
    start_period: float = 0.0
    unhealthy_threshold: Optional[int] = None


class HealthGate:

    def __init__(self, controller: ReplicaSetController, probe_client: ProbeClient):
        self.controller = controller
        self.probe_client = probe_client

    async def check(
            self,
            replica_set_id: str,
            probe: HealthProbe,
            timeout: float,
            interval: float,
            required_consecutive_passes: int,
            route: ProbeRoute = ProbeRoute.TEST
    ) -> HealthVerdict:
        """
        Sonde chaque instance toutes les `interval` secondes jusqu'à `timeout`.
        Healthy quand toutes les instances ont enchaîné `required_consecutive_passes` succès.
        Les `instance_count` instances du set doivent d'abord être running, dans le même timeout.
        """
        if timeout < interval:
            logger.info(f"Health check {replica_set_id}: timeout {timeout}s < intervalle {interval}s")
            return HealthVerdict.TIMED_OUT

        replica_set = self.controller.get(replica_set_id)
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout

        instances = await self._await_running(replica_set_id, replica_set.instance_count, interval, deadline)
        if instances is None:
            return HealthVerdict.UNHEALTHY
        if len(instances) < replica_set.instance_count:
            logger.warning(
                f"Health check {replica_set_id}: {len(instances)}/{replica_set.instance_count} "
                f"instances démarrées avant le timeout"
            )
            return HealthVerdict.TIMED_OUT

        verdicts: List[HealthVerdict] = await asyncio.gather(*[
            self._watch_instance(
                replica_set.service_name, replica_set_id, instance, probe, route,
                started, deadline, interval, max(1, required_consecutive_passes)
            )
            for instance in instances
        ])

        if HealthVerdict.UNHEALTHY in verdicts:
            verdict = HealthVerdict.UNHEALTHY
        elif HealthVerdict.TIMED_OUT in verdicts:
            verdict = HealthVerdict.TIMED_OUT
        else:
            verdict = HealthVerdict.HEALTHY

        logger.info(
            f"Health check {replica_set_id} ({route.value}): {verdict.value} "
            f"[{', '.join(v.value for v in verdicts)}]"
        )
        return verdict

    async def _await_running(
            self,
            set_id: str,
            expected: int,
            interval: float,
            deadline: float
    ) -> Optional[List[InstanceRef]]:
        """
        Attend que `expected` instances soient running avec une adresse.
        Retourne None si une instance est terminée, la liste partielle au timeout.
        """
        loop = asyncio.get_running_loop()
        while True:
            instances = await self.controller.list_instances(set_id)
            if any(i.is_terminated for i in instances):
                logger.warning(f"Health check {set_id}: instance terminée avant le démarrage du set")
                return None
            running = [i for i in instances if i.state == "running" and i.address]
            if len(running) >= expected:
                return running
            if loop.time() + interval > deadline:
                return running
            logger.debug(f"Health check {set_id}: {len(running)}/{expected} instances running")
            await asyncio.sleep(interval)

    async def _watch_instance(
            self,
            service_name: str,
            set_id: str,
            instance: InstanceRef,
            probe: HealthProbe,
            route: ProbeRoute,
            started: float,
            deadline: float,
            interval: float,
            required: int
    ) -> HealthVerdict:
        loop = asyncio.get_running_loop()
        url = self.controller.endpoint_for(service_name, instance, route)
        passes = 0
        failures = 0

        while True:
            if await self._is_terminated(set_id, instance.instance_id):
                logger.warning(f"Instance {instance.instance_id} terminée pendant le health check")
                return HealthVerdict.UNHEALTHY

            if await self._probe_once(url, probe):
                passes += 1
                failures = 0
                if passes >= required:
                    return HealthVerdict.HEALTHY
            else:
                passes = 0
                if loop.time() - started >= probe.start_period:
                    failures += 1
                    logger.debug(f"Probe {url} en échec ({failures} consécutifs)")
                    if probe.unhealthy_threshold and failures >= probe.unhealthy_threshold:
                        return HealthVerdict.UNHEALTHY

            if loop.time() + interval > deadline:
                logger.debug(f"Instance {instance.instance_id}: timeout avant {required} succès consécutifs")
                return HealthVerdict.TIMED_OUT
            await asyncio.sleep(interval)

    async def _probe_once(self, url: str, probe: HealthProbe) -> bool:
        try:
            return await asyncio.wait_for(
                self.probe_client.probe(url, probe.path, probe.probe_timeout),
                timeout=probe.probe_timeout
            )
        except asyncio.TimeoutError:
            return False

    async def _is_terminated(self, set_id: str, instance_id: str) -> bool:
        instances = await self.controller.list_instances(set_id)
        current = next((i for i in instances if i.instance_id == instance_id), None)
        return current is None or current.is_terminated
