"""
Plateforme de calcul locale au processus.

Utilisée avec PLATFORM_BACKEND=local en développement et par les tests: les replica sets sont
de simples enregistrements, la santé des instances est scriptée par replica set.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple
from itertools import chain, repeat
import threading
import logging

from app.core.exceptions import ProvisioningError
from app.external.platform import InstanceRef, ProbeRoute

logger = logging.getLogger(__name__)

LOCAL_SCHEME = "local://"


@dataclass
class _LocalReplicaSet:
    service_name: str
    set_id: str
    image_reference: str
    port: int
    instances: List[InstanceRef] = field(default_factory=list)


class InMemoryComputePlatform:

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self.replica_sets: Dict[str, _LocalReplicaSet] = {}
        self.entry_points: Dict[str, Optional[str]] = {}
        self.test_listeners: Dict[str, Optional[str]] = {}
        self.route_history: List[tuple] = []
        self.fail_next_creates = 0
        self.fail_next_retires = 0
        self._health: Dict[Tuple[str, Optional[ProbeRoute]], Iterator[bool]] = {}
        self._image_scripts: Dict[str, list] = {}
        self._lock = threading.Lock()

    # --- ComputePlatform ---

    def create_replica_set(self, service_name: str, set_id: str, image_reference: str,
                           instance_count: int, port: int) -> None:
        with self._lock:
            if self.fail_next_creates > 0:
                self.fail_next_creates -= 1
                raise ProvisioningError(f"Simulated capacity shortage for {set_id}")

            if set_id in self.replica_sets:
                return

            if self.capacity is not None and self._running_instances() + instance_count > self.capacity:
                raise ProvisioningError(
                    f"Capacity exhausted: {self._running_instances()} running, {instance_count} requested"
                )

            instances = [
                InstanceRef(instance_id=f"{set_id}-{i}", address=f"10.0.0.{len(self.replica_sets) * 10 + i}")
                for i in range(instance_count)
            ]
            self.replica_sets[set_id] = _LocalReplicaSet(
                service_name=service_name,
                set_id=set_id,
                image_reference=image_reference,
                port=port,
                instances=instances
            )
            for answers, then, route in self._image_scripts.get(image_reference, []):
                self.set_health(set_id, answers, then, route)
            logger.info(f"[local] replica set {set_id} lancé ({instance_count} instances, {image_reference})")

    def retire_replica_set(self, service_name: str, set_id: str) -> None:
        with self._lock:
            if self.fail_next_retires > 0:
                self.fail_next_retires -= 1
                raise ProvisioningError(f"Simulated platform error while deleting {set_id}")
            if self.replica_sets.pop(set_id, None) is not None:
                logger.info(f"[local] replica set {set_id} supprimé")

    def list_instances(self, set_id: str) -> List[InstanceRef]:
        replica_set = self.replica_sets.get(set_id)
        return list(replica_set.instances) if replica_set else []

    def route_entry_point(self, service_name: str, set_id: Optional[str]) -> None:
        with self._lock:
            self.entry_points[service_name] = set_id
            self.route_history.append((service_name, set_id))

    def route_test_listener(self, service_name: str, set_id: Optional[str]) -> None:
        self.test_listeners[service_name] = set_id

    def current_route(self, service_name: str) -> Optional[str]:
        return self.entry_points.get(service_name)

    def probe_url(self, service_name: str, instance: InstanceRef, route: ProbeRoute) -> str:
        return f"{LOCAL_SCHEME}{service_name}/{route.value}/{instance.instance_id}"

    # --- simulation ---

    def set_health(self, set_id: str, answers, then: Optional[bool] = None,
                   route: Optional[ProbeRoute] = None) -> None:
        """
        Script des réponses de probe pour toutes les instances d'un set.
        `answers` est un bool (réponse constante) ou une séquence consommée probe par probe,
        suivie de `then` (ou de la dernière réponse) indéfiniment. `route` limite le script
        à un seul listener.
        """
        self._health[(set_id, route)] = self._script(answers, then)

    def set_instance_health(self, instance_id: str, answers, then: Optional[bool] = None,
                            route: Optional[ProbeRoute] = None) -> None:
        self._health[(instance_id, route)] = self._script(answers, then)

    def set_image_health(self, image_reference: str, answers, then: Optional[bool] = None,
                         route: Optional[ProbeRoute] = None) -> None:
        """Script appliqué à chaque replica set lancé ensuite avec cette image"""
        self._image_scripts.setdefault(image_reference, []).append((answers, then, route))

    def terminate_instance(self, set_id: str, instance_id: str) -> None:
        replica_set = self.replica_sets[set_id]
        replica_set.instances = [
            InstanceRef(i.instance_id, i.address, "terminated") if i.instance_id == instance_id else i
            for i in replica_set.instances
        ]

    def answer_probe(self, url: str) -> bool:
        """Réponse scriptée pour une URL produite par probe_url"""
        service_name, route_value, instance_id = url[len(LOCAL_SCHEME):].split("/", 2)
        route = ProbeRoute(route_value)
        set_id = self._set_of(instance_id)
        if route == ProbeRoute.PUBLIC:
            # Le trafic public atteint le set routé, pas forcément l'instance visée
            routed = self.entry_points.get(service_name)
            if routed is None or routed not in self.replica_sets:
                return False
            if routed != set_id:
                set_id, instance_id = routed, None
        if set_id is None:
            return False

        for key in ((instance_id, route), (instance_id, None), (set_id, route), (set_id, None)):
            if key[0] is not None and key in self._health:
                return next(self._health[key])
        return True

    @staticmethod
    def _script(answers, then: Optional[bool]) -> Iterator[bool]:
        if isinstance(answers, bool):
            return repeat(answers)
        answers = list(answers)
        tail = then if then is not None else (answers[-1] if answers else False)
        return chain(answers, repeat(tail))

    def _set_of(self, instance_id: str) -> Optional[str]:
        for set_id, replica_set in self.replica_sets.items():
            if any(i.instance_id == instance_id for i in replica_set.instances):
                return set_id
        return None

    def _running_instances(self) -> int:
        return sum(len(rs.instances) for rs in self.replica_sets.values())
