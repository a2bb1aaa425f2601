"""Interface des capacités consommées sur la plateforme de calcul (cluster, load balancer)."""
from dataclasses import dataclass
from typing import List, Optional, Protocol
import enum


class ProbeRoute(str, enum.Enum):
    TEST = "test"        # listener de test, jamais exposé au trafic de production
    PUBLIC = "public"    # point d'entrée public


@dataclass(frozen=True)
class InstanceRef:
    instance_id: str
    address: Optional[str]
    state: str = "running"   # pending, running, terminated

    @property
    def is_terminated(self) -> bool:
        return self.state in ("terminated", "failed")


class ComputePlatform(Protocol):

    def create_replica_set(self, service_name: str, set_id: str, image_reference: str,
                           instance_count: int, port: int) -> None:
        """Lance les instances; lève ProvisioningError si la capacité manque"""

    def retire_replica_set(self, service_name: str, set_id: str) -> None:
        """Draine et supprime les instances; sans effet si déjà supprimé"""

    def list_instances(self, set_id: str) -> List[InstanceRef]:
        ...

    def route_entry_point(self, service_name: str, set_id: Optional[str]) -> None:
        """Réaffecte atomiquement le point d'entrée public (None = détaché)"""

    def route_test_listener(self, service_name: str, set_id: Optional[str]) -> None:
        ...

    def current_route(self, service_name: str) -> Optional[str]:
        ...

    def probe_url(self, service_name: str, instance: InstanceRef, route: ProbeRoute) -> str:
        ...
