import asyncio
import logging
import uuid
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from app.core.decorators import retry_async
from app.core.exceptions import NotFound, ProvisioningError
from app.external.platform import ComputePlatform, InstanceRef, ProbeRoute
from app.models.artifact import Artifact
from app.models.replica_set import ReplicaSet, ReplicaSetRole
from app.repositories.replica_set_repository import ReplicaSetRepository

logger = logging.getLogger(__name__)


class ReplicaSetController:
    """Création, inspection et retrait des replica sets sur la plateforme"""

    def __init__(
            self,
            platform: ComputePlatform,
            session_factory: sessionmaker,
            provisioning_attempts: int = 3,
            provisioning_retry_delay: float = 5.0
    ):
        self.platform = platform
        self.session_factory = session_factory
        self.provisioning_attempts = provisioning_attempts
        self.provisioning_retry_delay = provisioning_retry_delay

    async def create(self, service_name: str, artifact: Artifact, instance_count: int, port: int) -> ReplicaSet:
        """Lance un nouveau replica set candidat (rôle Green) pour l'artefact"""
        if instance_count < 1:
            raise ValueError("instance_count must be >= 1")

        set_id = f"{service_name}-{artifact.revision_id[:12]}-{uuid.uuid4().hex[:6]}".lower()
        # Le set existe en base avant d'exister sur la plateforme
        with self.session_factory() as db:
            replica_set = ReplicaSetRepository(db).create({
                "set_id": set_id,
                "service_name": service_name,
                "revision_id": artifact.revision_id,
                "role": ReplicaSetRole.GREEN,
                "instance_count": instance_count,
                "desired_port": port
            })

        try:
            await self._launch(service_name, set_id, artifact.image_reference, instance_count, port)
            await asyncio.to_thread(self.platform.route_test_listener, service_name, set_id)
        except Exception as e:
            logger.error(f"Création du replica set {set_id} en échec: {e}")
            await self._discard(set_id)
            raise

        logger.info(f"Replica set {set_id} créé pour {service_name} (révision {artifact.revision_id})")
        return replica_set

    async def _discard(self, set_id: str) -> None:
        """Retire un set dont la création a échoué; s'il résiste, il reste en Retiring pour le janitor"""
        self.set_role(set_id, ReplicaSetRole.RETIRING)
        try:
            await self.retire(set_id)
        except Exception as e:
            logger.error(f"Retrait du set incomplet {set_id} différé: {e}")

    @retry_async(
        attempts=lambda self: self.provisioning_attempts,
        delay=lambda self: self.provisioning_retry_delay,
        exceptions=(ProvisioningError,)
    )
    async def _launch(self, service_name: str, set_id: str, image_reference: str, instance_count: int, port: int):
        await asyncio.to_thread(
            self.platform.create_replica_set, service_name, set_id, image_reference, instance_count, port
        )

    async def retire(self, set_id: str) -> None:
        """Draine et supprime les instances; sans effet si déjà retiré"""
        with self.session_factory() as db:
            replica_set = ReplicaSetRepository(db).get_by_set_id(set_id)
        if replica_set is None:
            raise NotFound(f"Replica set '{set_id}' not found")
        if replica_set.is_retired:
            logger.debug(f"Replica set {set_id} déjà retiré")
            return

        await asyncio.to_thread(self.platform.retire_replica_set, replica_set.service_name, set_id)
        with self.session_factory() as db:
            ReplicaSetRepository(db).mark_retired(set_id)
        logger.info(f"Replica set {set_id} retiré")

    def set_role(self, set_id: str, role: ReplicaSetRole) -> None:
        with self.session_factory() as db:
            ReplicaSetRepository(db).set_role(set_id, role)

    def get(self, set_id: str) -> ReplicaSet:
        with self.session_factory() as db:
            replica_set = ReplicaSetRepository(db).get_by_set_id(set_id)
        if replica_set is None:
            raise NotFound(f"Replica set '{set_id}' not found")
        return replica_set

    async def list_instances(self, set_id: str) -> List[InstanceRef]:
        return await asyncio.to_thread(self.platform.list_instances, set_id)

    def endpoint_for(self, service_name: str, instance: InstanceRef, route: ProbeRoute) -> str:
        return self.platform.probe_url(service_name, instance, route)

    def retiring_sets(self, service_name: Optional[str] = None) -> List[ReplicaSet]:
        with self.session_factory() as db:
            return ReplicaSetRepository(db).get_retiring(service_name)
