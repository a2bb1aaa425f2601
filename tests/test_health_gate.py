"""Tests for the health gate polling and verdict aggregation."""
import pytest
import pytest_asyncio

from app.external.local_platform import InMemoryComputePlatform
from app.external.platform import InstanceRef, ProbeRoute
from app.services.health_gate import HealthGate, HealthProbe, HealthVerdict
from app.services.replica_set_controller import ReplicaSetController

SERVICE = "app-service"
PROBE = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=None)


class CountingProbeClient:
    def __init__(self, platform):
        self.platform = platform
        self.calls = []

    async def probe(self, url, path, timeout):
        self.calls.append(url)
        return self.platform.answer_probe(url)


@pytest_asyncio.fixture
async def candidate(controller, registry):
    artifact = registry.register("abc123", "repo:abc123")
    return await controller.create(SERVICE, artifact, 3, 8080)


@pytest.fixture
def counting_gate(controller, platform):
    client = CountingProbeClient(platform)
    return HealthGate(controller, client), client


@pytest.mark.asyncio
async def test_timeout_shorter_than_interval_issues_no_probe(counting_gate, candidate):
    gate, client = counting_gate

    verdict = await gate.check(candidate.set_id, PROBE, timeout=0.01, interval=0.5, required_consecutive_passes=1)

    assert verdict == HealthVerdict.TIMED_OUT
    assert client.calls == []


@pytest.mark.asyncio
async def test_all_instances_ready(counting_gate, candidate):
    gate, client = counting_gate

    verdict = await gate.check(candidate.set_id, PROBE, timeout=0.5, interval=0.001, required_consecutive_passes=3)

    assert verdict == HealthVerdict.HEALTHY
    # 3 instances x 3 succès consécutifs
    assert len(client.calls) == 9


@pytest.mark.asyncio
async def test_flapping_instance_needs_consecutive_passes(counting_gate, candidate, platform):
    gate, client = counting_gate
    flapping = platform.list_instances(candidate.set_id)[0].instance_id
    platform.set_instance_health(flapping, [True, False, True, True], then=True)

    verdict = await gate.check(candidate.set_id, PROBE, timeout=0.5, interval=0.001, required_consecutive_passes=2)

    assert verdict == HealthVerdict.HEALTHY
    assert client.calls.count(f"local://{SERVICE}/test/{flapping}") == 4


@pytest.mark.asyncio
async def test_one_instance_never_ready_times_out_whole_set(health_gate, candidate, platform):
    stuck = platform.list_instances(candidate.set_id)[1].instance_id
    platform.set_instance_health(stuck, False)

    verdict = await health_gate.check(candidate.set_id, PROBE, timeout=0.05, interval=0.001,
                                      required_consecutive_passes=2)

    assert verdict == HealthVerdict.TIMED_OUT


@pytest.mark.asyncio
async def test_unhealthy_threshold_marks_set_unhealthy(health_gate, candidate, platform):
    platform.set_health(candidate.set_id, False)
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=3)

    verdict = await health_gate.check(candidate.set_id, probe, timeout=5.0, interval=0.001,
                                      required_consecutive_passes=2)

    assert verdict == HealthVerdict.UNHEALTHY


@pytest.mark.asyncio
async def test_unhealthy_wins_over_timeout(health_gate, candidate, platform):
    instances = platform.list_instances(candidate.set_id)
    platform.set_instance_health(instances[0].instance_id, False)
    platform.set_instance_health(instances[1].instance_id, [False, False, False, True], then=False)
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=3)

    verdict = await health_gate.check(candidate.set_id, probe, timeout=0.05, interval=0.001,
                                      required_consecutive_passes=5)

    assert verdict == HealthVerdict.UNHEALTHY


@pytest.mark.asyncio
async def test_start_period_ignores_early_failures(health_gate, candidate, platform):
    platform.set_health(candidate.set_id, [False] * 5, then=True)
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=10.0, unhealthy_threshold=2)

    verdict = await health_gate.check(candidate.set_id, probe, timeout=1.0, interval=0.001,
                                      required_consecutive_passes=2)

    assert verdict == HealthVerdict.HEALTHY


@pytest.mark.asyncio
async def test_terminated_instance_is_unhealthy(health_gate, candidate, platform):
    platform.terminate_instance(candidate.set_id, platform.list_instances(candidate.set_id)[2].instance_id)

    verdict = await health_gate.check(candidate.set_id, PROBE, timeout=0.5, interval=0.001,
                                      required_consecutive_passes=2)

    assert verdict == HealthVerdict.UNHEALTHY


@pytest.mark.asyncio
async def test_set_without_instances_times_out(counting_gate, candidate, platform):
    gate, client = counting_gate
    platform.replica_sets[candidate.set_id].instances = []

    verdict = await gate.check(candidate.set_id, PROBE, timeout=0.05, interval=0.001,
                               required_consecutive_passes=1)

    assert verdict == HealthVerdict.TIMED_OUT
    assert client.calls == []


class StaggeredPlatform(InMemoryComputePlatform):
    """Les instances apparaissent une par une, comme des pods qui démarrent"""

    def __init__(self, listings_per_instance: int):
        super().__init__()
        self.listings_per_instance = listings_per_instance
        self.listings = 0

    def list_instances(self, set_id):
        instances = super().list_instances(set_id)
        self.listings += 1
        visible = self.listings // self.listings_per_instance
        return instances[:visible]


def staggered_gate(platform, session_factory):
    controller = ReplicaSetController(platform, session_factory, provisioning_retry_delay=0)
    return controller, HealthGate(controller, CountingProbeClient(platform))


@pytest.mark.asyncio
async def test_waits_for_every_instance_before_verdict(session_factory, registry):
    platform = StaggeredPlatform(listings_per_instance=3)
    controller, gate = staggered_gate(platform, session_factory)
    artifact = registry.register("abc123", "repo:abc123")
    replica_set = await controller.create(SERVICE, artifact, 3, 8080)

    verdict = await gate.check(replica_set.set_id, PROBE, timeout=1.0, interval=0.001,
                               required_consecutive_passes=1)

    assert verdict == HealthVerdict.HEALTHY
    probed = {url.rsplit("/", 1)[1] for url in gate.probe_client.calls}
    assert probed == {i.instance_id for i in platform.replica_sets[replica_set.set_id].instances}


@pytest.mark.asyncio
async def test_partial_set_is_never_healthy(session_factory, registry):
    platform = StaggeredPlatform(listings_per_instance=10_000)
    controller, gate = staggered_gate(platform, session_factory)
    artifact = registry.register("abc123", "repo:abc123")
    replica_set = await controller.create(SERVICE, artifact, 3, 8080)
    platform.listings = 10_000

    verdict = await gate.check(replica_set.set_id, PROBE, timeout=0.05, interval=0.001,
                               required_consecutive_passes=1)

    assert verdict == HealthVerdict.TIMED_OUT
    assert gate.probe_client.calls == []


@pytest.mark.asyncio
async def test_pending_instances_are_not_probed(counting_gate, candidate, platform):
    gate, client = counting_gate
    replica_set = platform.replica_sets[candidate.set_id]
    replica_set.instances = [InstanceRef(i.instance_id, None, "pending") for i in replica_set.instances]

    verdict = await gate.check(candidate.set_id, PROBE, timeout=0.05, interval=0.001,
                               required_consecutive_passes=1)

    assert verdict == HealthVerdict.TIMED_OUT
    assert client.calls == []


@pytest.mark.asyncio
async def test_public_route_fails_when_entry_point_detached(health_gate, candidate):
    verdict = await health_gate.check(candidate.set_id, PROBE, timeout=0.02, interval=0.001,
                                      required_consecutive_passes=1, route=ProbeRoute.PUBLIC)

    assert verdict == HealthVerdict.TIMED_OUT


@pytest.mark.asyncio
async def test_public_route_probes_routed_set(health_gate, candidate, platform):
    platform.route_entry_point(SERVICE, candidate.set_id)
    platform.set_health(candidate.set_id, False, route=ProbeRoute.PUBLIC)

    verdict = await health_gate.check(candidate.set_id, PROBE, timeout=0.02, interval=0.001,
                                      required_consecutive_passes=1, route=ProbeRoute.PUBLIC)
    assert verdict == HealthVerdict.TIMED_OUT

    verdict = await health_gate.check(candidate.set_id, PROBE, timeout=0.5, interval=0.001,
                                      required_consecutive_passes=1, route=ProbeRoute.TEST)
    assert verdict == HealthVerdict.HEALTHY
