from functools import lru_cache
from typing import Dict
from sqlalchemy.orm import Session, sessionmaker
from fastapi import Depends

from app.config import settings
from app.core.database import get_db, get_db_manager
from app.external.platform import ComputePlatform
from app.external.k8s_client import K8sClient
from app.external.local_platform import InMemoryComputePlatform
from app.external.probe_client import HttpProbeClient, LocalProbeClient
from app.external.registry_client import RegistryClient
from app.repositories.pipeline_run_repository import PipelineRunRepository
from app.services.approval_gate import ApprovalGate
from app.services.artifact_registry import ArtifactRegistry
from app.services.build_collaborator import RegistryBuildCollaborator, StaticBuildCollaborator
from app.services.health_gate import HealthGate
from app.services.pipeline_sequencer import PipelineSequencer, DeploymentSettings
from app.services.replica_set_controller import ReplicaSetController
from app.services.rollback_manager import RollbackManager
from app.services.traffic_switcher import TrafficSwitcher
from app.workers.pipeline_worker import PipelineWorker


def is_local_backend() -> bool:
    return settings.PLATFORM_BACKEND.lower() == "local"


# === CLIENTS EXTERNES ===
@lru_cache()
def get_platform() -> ComputePlatform:
    if is_local_backend():
        return InMemoryComputePlatform()
    return K8sClient(
        namespace=settings.K8S_NAMESPACE,
        listener_port=settings.LISTENER_PORT,
        test_listener_port=settings.TEST_LISTENER_PORT,
        container_port=settings.CONTAINER_PORT
    )


@lru_cache()
def get_probe_client():
    if is_local_backend():
        return LocalProbeClient(get_platform())
    return HttpProbeClient()


@lru_cache()
def get_registry_client() -> RegistryClient:
    return RegistryClient(base_url=settings.REGISTRY_URL)


# === REPOSITORIES ===
def get_pipeline_run_repository(db: Session = Depends(get_db)) -> PipelineRunRepository:
    """Factory pour le repository des runs"""
    return PipelineRunRepository(db)


# === SERVICES ===
def get_session_factory() -> sessionmaker:
    return get_db_manager().session_factory


@lru_cache()
def get_artifact_registry() -> ArtifactRegistry:
    return ArtifactRegistry(get_session_factory())


@lru_cache()
def get_replica_set_controller() -> ReplicaSetController:
    return ReplicaSetController(
        platform=get_platform(),
        session_factory=get_session_factory(),
        provisioning_attempts=settings.PROVISIONING_ATTEMPTS,
        provisioning_retry_delay=settings.PROVISIONING_RETRY_DELAY_SECONDS
    )


@lru_cache()
def get_health_gate() -> HealthGate:
    return HealthGate(get_replica_set_controller(), get_probe_client())


@lru_cache()
def get_approval_gate() -> ApprovalGate:
    return ApprovalGate(get_session_factory())


@lru_cache()
def get_build_collaborator():
    if is_local_backend():
        return StaticBuildCollaborator(settings.registry_host, settings.IMAGE_REPOSITORY)
    return RegistryBuildCollaborator(get_registry_client(), settings.registry_host, settings.IMAGE_REPOSITORY)


# === ORCHESTRATION (un séquenceur par service) ===
_sequencers: Dict[str, PipelineSequencer] = {}
_pipeline_worker_instance = None


def get_sequencer(service_name: str) -> PipelineSequencer:
    """Séquenceur du service (singleton par service, verrou et état propres)"""
    sequencer = _sequencers.get(service_name)
    if sequencer is None:
        session_factory = get_session_factory()
        controller = get_replica_set_controller()
        switcher = TrafficSwitcher(service_name, controller, get_health_gate(), session_factory)
        sequencer = PipelineSequencer(
            service_name=service_name,
            registry=get_artifact_registry(),
            controller=controller,
            switcher=switcher,
            approval_gate=get_approval_gate(),
            rollback_manager=RollbackManager(switcher, session_factory),
            build_collaborator=get_build_collaborator(),
            session_factory=session_factory,
            deployment=DeploymentSettings.from_settings(settings)
        )
        _sequencers[service_name] = sequencer
    return sequencer


def get_pipeline_worker() -> PipelineWorker:
    """Factory pour le worker de reprise et de nettoyage (singleton)"""
    global _pipeline_worker_instance
    if _pipeline_worker_instance is None:
        _pipeline_worker_instance = PipelineWorker(
            sequencer_factory=get_sequencer,
            session_factory=get_session_factory(),
            controller=get_replica_set_controller(),
            termination_wait=settings.TERMINATION_WAIT_SECONDS,
            interval=settings.JANITOR_INTERVAL_SECONDS
        )
    return _pipeline_worker_instance


# === UTILITY FUNCTIONS ===
def reset_orchestrator():
    """
    Réinitialise tous les singletons (plateforme, composants, séquenceurs, worker).
    Utile pour les tests ou après un changement de configuration.
    """
    global _pipeline_worker_instance
    _sequencers.clear()
    _pipeline_worker_instance = None
    for factory in (get_platform, get_probe_client, get_registry_client, get_artifact_registry,
                    get_replica_set_controller, get_health_gate, get_approval_gate, get_build_collaborator):
        factory.cache_clear()
