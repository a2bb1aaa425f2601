import asyncio
from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.database import Base
from app.external.local_platform import InMemoryComputePlatform
from app.external.probe_client import LocalProbeClient
from app.services.approval_gate import ApprovalGate
from app.services.artifact_registry import ArtifactRegistry
from app.services.build_collaborator import StaticBuildCollaborator
from app.services.health_gate import HealthGate, HealthProbe
from app.services.pipeline_sequencer import PipelineSequencer, DeploymentSettings
from app.services.replica_set_controller import ReplicaSetController
from app.services.rollback_manager import RollbackManager
from app.services.traffic_switcher import TrafficSwitcher

SERVICE = "app-service"
REGISTRY_HOST = "registry.local:5000"
REPOSITORY = "app-ecr-repository"


def image_for(revision: str) -> str:
    return f"{REGISTRY_HOST}/{REPOSITORY}:{revision}"


def fast_settings(**overrides) -> DeploymentSettings:
    values = dict(
        instance_count=2,
        container_port=8080,
        probe=HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=2),
        health_interval=0.001,
        required_passes=2,
        pre_check_timeout=0.2,
        post_check_timeout=0.2,
        approval_timeout=5.0,
        termination_wait=0.0,
    )
    values.update(overrides)
    return DeploymentSettings(**values)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def platform():
    return InMemoryComputePlatform()


@pytest.fixture
def registry(session_factory):
    return ArtifactRegistry(session_factory)


@pytest.fixture
def controller(platform, session_factory):
    return ReplicaSetController(platform, session_factory, provisioning_attempts=3, provisioning_retry_delay=0)


@pytest.fixture
def health_gate(controller, platform):
    return HealthGate(controller, LocalProbeClient(platform))


@pytest.fixture
def switcher(controller, health_gate, session_factory):
    return TrafficSwitcher(SERVICE, controller, health_gate, session_factory)


@pytest.fixture
def rollback_manager(switcher, session_factory):
    return RollbackManager(switcher, session_factory)


@pytest.fixture
def build():
    return StaticBuildCollaborator(REGISTRY_HOST, REPOSITORY)


@pytest.fixture
def make_sequencer(platform, session_factory, build):
    """Construit un orchestrateur complet; chaque appel simule un nouveau processus"""

    def _make(deployment: DeploymentSettings = None, approval_gate: ApprovalGate = None) -> PipelineSequencer:
        controller = ReplicaSetController(platform, session_factory, provisioning_attempts=3,
                                          provisioning_retry_delay=0)
        health_gate = HealthGate(controller, LocalProbeClient(platform))
        switcher = TrafficSwitcher(SERVICE, controller, health_gate, session_factory)
        return PipelineSequencer(
            service_name=SERVICE,
            registry=ArtifactRegistry(session_factory),
            controller=controller,
            switcher=switcher,
            approval_gate=approval_gate or ApprovalGate(session_factory),
            rollback_manager=RollbackManager(switcher, session_factory),
            build_collaborator=build,
            session_factory=session_factory,
            deployment=deployment or fast_settings()
        )

    return _make
