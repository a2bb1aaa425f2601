"""End-to-end pipeline runs against the in-memory platform."""
import asyncio

import pytest

from app.core.exceptions import CancellationNotAllowed, NotFound, RunInProgress
from app.external.platform import ProbeRoute
from app.models.approval import DecisionStatus
from app.models.pipeline_run import RunOutcome, StageOutcome
from app.models.replica_set import ReplicaSetRole
from app.models.routing_state import DeploymentPhase
from app.services.approval_gate import ApprovalGate
from app.services.health_gate import HealthProbe
from conftest import SERVICE, fast_settings, image_for, wait_until

FULL_PIPELINE = ["Source", "Build", "Deploy", "PreCheck", "Approval", "Cutover", "PostCheck", "Commit"]


async def approve(sequencer, run_id, by="alice"):
    await wait_until(lambda: sequencer.approval_gate.is_waiting(run_id))
    sequencer.approval_gate.decide(run_id, True, decided_by=by)


async def deliver(sequencer, revision):
    """Run complet approuvé dès que la porte d'approbation est atteinte"""
    run_id = await sequencer.on_new_revision(revision)
    await approve(sequencer, run_id)
    await sequencer.join()
    return sequencer.get_run(run_id)


def outcomes(run):
    return [(s.name, s.outcome) for s in run.stages]


@pytest.mark.asyncio
async def test_two_successive_deployments(make_sequencer, platform):
    sequencer = make_sequencer()

    first = await deliver(sequencer, "abc123")
    assert first.outcome == RunOutcome.SUCCEEDED
    assert first.revision_id == "abc123"
    assert first.stage_names() == FULL_PIPELINE
    assert all(outcome == StageOutcome.SUCCEEDED for _, outcome in outcomes(first))
    live1 = sequencer.switcher.load_state().live_set_id

    second = await deliver(sequencer, "def456")
    assert second.outcome == RunOutcome.SUCCEEDED
    state = sequencer.switcher.load_state()
    assert state.phase == DeploymentPhase.COMMITTED
    assert state.active_run_id is None
    assert state.live_set_id != live1
    assert platform.route_history == [(SERVICE, live1), (SERVICE, state.live_set_id)]
    assert live1 not in platform.replica_sets
    assert sequencer.controller.get(live1).is_retired
    assert sequencer.controller.get(state.live_set_id).role == ReplicaSetRole.BLUE
    assert [r.run_id for r in sequencer.list_runs()] == [second.run_id, first.run_id]


@pytest.mark.asyncio
async def test_failed_pre_check_rolls_back_without_touching_traffic(make_sequencer, platform):
    sequencer = make_sequencer()
    await deliver(sequencer, "rev1")
    live = sequencer.switcher.load_state().live_set_id
    platform.set_image_health(image_for("rev2"), False, route=ProbeRoute.TEST)

    run = await sequencer.run("rev2")

    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names() == ["Source", "Build", "Deploy", "PreCheck", "Rollback"]
    assert outcomes(run)[3] == ("PreCheck", StageOutcome.FAILED)
    assert outcomes(run)[4] == ("Rollback", StageOutcome.ROLLED_BACK)
    state = sequencer.switcher.load_state()
    assert state.phase == DeploymentPhase.IDLE
    assert state.live_set_id == live
    assert platform.route_history == [(SERVICE, live)]
    assert set(platform.replica_sets) == {live}
    with pytest.raises(NotFound):
        sequencer.approval_gate.get(run.run_id)


@pytest.mark.asyncio
async def test_approval_timeout_rolls_back(make_sequencer, platform):
    sequencer = make_sequencer(fast_settings(approval_timeout=0.05))

    run = await sequencer.run("rev1")

    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names() == ["Source", "Build", "Deploy", "PreCheck", "Approval", "Rollback"]
    approval = run.stages[4]
    assert approval.outcome == StageOutcome.FAILED
    assert "timed out" in approval.detail
    decision = sequencer.approval_gate.get(run.run_id)
    assert decision.status == DecisionStatus.REJECTED
    assert decision.reason == "timeout"
    assert platform.route_history == []
    assert platform.replica_sets == {}


@pytest.mark.asyncio
async def test_rejection_rolls_back(make_sequencer, platform):
    sequencer = make_sequencer()
    run_id = await sequencer.on_new_revision("rev1")
    await wait_until(lambda: sequencer.approval_gate.is_waiting(run_id))

    sequencer.approval_gate.decide(run_id, False, decided_by="bob")
    await sequencer.join()

    run = sequencer.get_run(run_id)
    assert run.outcome == RunOutcome.ROLLED_BACK
    assert "bob" in run.stages[4].detail
    assert platform.replica_sets == {}


@pytest.mark.asyncio
async def test_failed_post_check_restores_previous_live(make_sequencer, platform):
    sequencer = make_sequencer()
    await deliver(sequencer, "rev1")
    live = sequencer.switcher.load_state().live_set_id
    platform.set_image_health(image_for("rev2"), False, route=ProbeRoute.PUBLIC)

    run = await deliver(sequencer, "rev2")

    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names() == FULL_PIPELINE[:7] + ["Rollback"]
    assert outcomes(run)[6] == ("PostCheck", StageOutcome.FAILED)
    candidate = platform.route_history[1][1]
    assert platform.route_history == [(SERVICE, live), (SERVICE, candidate), (SERVICE, live)]
    assert platform.current_route(SERVICE) == live
    assert sequencer.switcher.load_state().live_set_id == live
    assert sequencer.controller.get(live).role == ReplicaSetRole.BLUE
    assert candidate not in platform.replica_sets


@pytest.mark.asyncio
async def test_second_trigger_is_rejected_while_running(make_sequencer):
    sequencer = make_sequencer()
    run_id = await sequencer.on_new_revision("rev1")

    with pytest.raises(RunInProgress):
        await sequencer.on_new_revision("rev2")

    await approve(sequencer, run_id)
    await sequencer.join()
    assert sequencer.get_run(run_id).outcome == RunOutcome.SUCCEEDED
    assert len(sequencer.list_runs()) == 1


@pytest.mark.asyncio
async def test_other_orchestrator_sees_run_in_progress(make_sequencer):
    sequencer = make_sequencer()
    run_id = await sequencer.on_new_revision("rev1")

    with pytest.raises(RunInProgress):
        await make_sequencer().on_new_revision("rev2")

    await approve(sequencer, run_id)
    await sequencer.join()


@pytest.mark.asyncio
async def test_build_failure_fails_run(make_sequencer, build, platform):
    build.failing_revisions.add("broken")
    sequencer = make_sequencer()

    run = await sequencer.run("broken")

    assert run.outcome == RunOutcome.FAILED
    assert outcomes(run) == [("Source", StageOutcome.SUCCEEDED), ("Build", StageOutcome.FAILED)]
    assert platform.replica_sets == {}
    assert sequencer.active_run_id is None


@pytest.mark.asyncio
async def test_provisioning_failure_fails_run(make_sequencer, platform):
    platform.fail_next_creates = 5
    sequencer = make_sequencer()

    run = await sequencer.run("rev1")

    assert run.outcome == RunOutcome.FAILED
    assert outcomes(run)[-1] == ("Deploy", StageOutcome.FAILED)
    state = sequencer.switcher.load_state()
    assert state.phase == DeploymentPhase.IDLE
    assert state.active_run_id is None


@pytest.mark.asyncio
async def test_empty_revision_fails_at_source(make_sequencer):
    sequencer = make_sequencer()

    run = await sequencer.run("   ")

    assert run.outcome == RunOutcome.FAILED
    assert outcomes(run) == [("Source", StageOutcome.FAILED)]


@pytest.mark.asyncio
async def test_cancel_before_first_stage(make_sequencer):
    sequencer = make_sequencer()
    run_id = await sequencer.on_new_revision("rev1")

    sequencer.cancel(run_id, requested_by="alice")
    await sequencer.join()

    run = sequencer.get_run(run_id)
    assert run.outcome == RunOutcome.FAILED
    assert outcomes(run) == [("Source", StageOutcome.CANCELLED)]
    assert "alice" in run.stages[0].detail


@pytest.mark.asyncio
async def test_cancel_during_pre_check(make_sequencer, platform):
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=None)
    sequencer = make_sequencer(fast_settings(probe=probe, health_interval=0.005, pre_check_timeout=2.0))
    platform.set_image_health(image_for("rev1"), [False] * 20, then=True)
    run_id = await sequencer.on_new_revision("rev1")
    await wait_until(lambda: sequencer.switcher.load_state().phase == DeploymentPhase.PRE_CHECK)

    sequencer.cancel(run_id, requested_by="alice")
    await sequencer.join()

    run = sequencer.get_run(run_id)
    assert run.outcome == RunOutcome.FAILED
    assert run.stage_names() == ["Source", "Build", "Deploy", "PreCheck", "Approval", "Rollback"]
    assert run.stages[4].outcome == StageOutcome.CANCELLED
    assert sequencer.switcher.load_state().phase == DeploymentPhase.IDLE
    assert platform.replica_sets == {}
    assert platform.route_history == []


@pytest.mark.asyncio
async def test_cancel_not_allowed_once_awaiting_approval(make_sequencer):
    sequencer = make_sequencer()
    run_id = await sequencer.on_new_revision("rev1")
    await wait_until(lambda: sequencer.approval_gate.is_waiting(run_id))

    with pytest.raises(CancellationNotAllowed):
        sequencer.cancel(run_id)

    sequencer.approval_gate.decide(run_id, True)
    await sequencer.join()
    assert sequencer.get_run(run_id).outcome == RunOutcome.SUCCEEDED
    with pytest.raises(CancellationNotAllowed):
        sequencer.cancel(run_id)


def test_unknown_run(make_sequencer):
    with pytest.raises(NotFound):
        make_sequencer().get_run("missing")


@pytest.mark.asyncio
async def test_recover_run_waiting_for_approval(make_sequencer, session_factory):
    crashed = make_sequencer()
    run_id = await crashed.on_new_revision("rev1")
    await wait_until(lambda: crashed.approval_gate.is_waiting(run_id))
    crashed._task.cancel()
    await asyncio.wait([crashed._task])

    restarted = make_sequencer(approval_gate=ApprovalGate(session_factory))
    assert await restarted.recover() == [run_id]
    await approve(restarted, run_id)
    await restarted.join()

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.SUCCEEDED
    assert run.stage_names() == FULL_PIPELINE
    assert restarted.switcher.load_state().active_run_id is None


@pytest.mark.asyncio
async def test_recover_run_interrupted_during_pre_check(make_sequencer, platform):
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=None)
    crashed = make_sequencer(fast_settings(probe=probe, pre_check_timeout=5.0))
    platform.set_image_health(image_for("rev1"), False)
    run_id = await crashed.on_new_revision("rev1")
    await wait_until(lambda: crashed.switcher.load_state().phase == DeploymentPhase.PRE_CHECK)
    crashed._task.cancel()
    await asyncio.wait([crashed._task])

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]
    await restarted.join()

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names() == ["Source", "Build", "Deploy", "Rollback"]
    state = restarted.switcher.load_state()
    assert state.phase == DeploymentPhase.IDLE
    assert state.candidate_set_id is None
    assert platform.replica_sets == {}


@pytest.mark.asyncio
async def test_recover_without_interrupted_runs(make_sequencer):
    sequencer = make_sequencer()
    await deliver(sequencer, "rev1")

    assert await make_sequencer().recover() == []


@pytest.mark.asyncio
async def test_old_live_retire_failure_does_not_block_service(make_sequencer, platform):
    sequencer = make_sequencer()
    await deliver(sequencer, "rev1")
    live1 = sequencer.switcher.load_state().live_set_id
    platform.fail_next_retires = 1

    second = await deliver(sequencer, "rev2")

    assert second.outcome == RunOutcome.SUCCEEDED
    assert outcomes(second)[-1] == ("Commit", StageOutcome.SUCCEEDED)
    assert "still retiring" in second.stages[-1].detail
    state = sequencer.switcher.load_state()
    assert state.phase == DeploymentPhase.COMMITTED
    assert state.active_run_id is None
    assert live1 in platform.replica_sets

    third = await deliver(sequencer, "rev3")

    assert third.outcome == RunOutcome.SUCCEEDED
    assert live1 not in platform.replica_sets
    assert sequencer.controller.get(live1).is_retired


async def crash_while(sequencer, predicate):
    await wait_until(predicate)
    sequencer._task.cancel()
    await asyncio.wait([sequencer._task])


def committed_by(sequencer, run_id):
    state = sequencer.switcher.load_state()
    return state.phase == DeploymentPhase.COMMITTED and state.active_run_id == run_id


@pytest.mark.asyncio
async def test_recover_run_interrupted_during_post_check(make_sequencer, platform):
    await deliver(make_sequencer(), "rev1")
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=None)
    crashed = make_sequencer(fast_settings(probe=probe, post_check_timeout=5.0))
    live1 = crashed.switcher.load_state().live_set_id
    platform.set_image_health(image_for("rev2"), False, route=ProbeRoute.PUBLIC)
    run_id = await crashed.on_new_revision("rev2")
    await approve(crashed, run_id)
    await crash_while(crashed, lambda: crashed.switcher.load_state().phase == DeploymentPhase.POST_CHECK)
    live2 = crashed.switcher.load_state().live_set_id
    platform.set_health(live2, True, route=ProbeRoute.PUBLIC)

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]
    await restarted.join()

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.SUCCEEDED
    assert run.stage_names() == FULL_PIPELINE
    state = restarted.switcher.load_state()
    assert state.phase == DeploymentPhase.COMMITTED
    assert state.live_set_id == live2
    assert state.active_run_id is None
    assert live1 not in platform.replica_sets


@pytest.mark.asyncio
async def test_recover_run_interrupted_while_draining(make_sequencer, platform):
    await deliver(make_sequencer(), "rev1")
    crashed = make_sequencer(fast_settings(termination_wait=5.0))
    live1 = crashed.switcher.load_state().live_set_id
    run_id = await crashed.on_new_revision("rev2")
    await approve(crashed, run_id)
    await crash_while(crashed, lambda: committed_by(crashed, run_id))
    assert crashed.switcher.load_state().active_run_id == run_id

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]
    await restarted.join()

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.SUCCEEDED
    assert run.stage_names() == FULL_PIPELINE
    assert restarted.switcher.load_state().active_run_id is None
    assert live1 not in platform.replica_sets
    assert restarted.controller.get(live1).is_retired


@pytest.mark.asyncio
async def test_recover_run_interrupted_during_cutover_restores_old_live(make_sequencer, platform):
    await deliver(make_sequencer(), "rev1")
    crashed = make_sequencer()
    live1 = crashed.switcher.load_state().live_set_id
    run_id = await crashed.on_new_revision("rev2")
    await crash_while(crashed, lambda: crashed.approval_gate.is_waiting(run_id))
    # Le point d'entrée a basculé mais le processus est tombé avant d'enregistrer le nouveau live
    switcher = crashed.switcher
    state = switcher.apply_transition(switcher.load_state(), DeploymentPhase.CUTOVER)
    candidate = state.candidate_set_id
    platform.route_entry_point(SERVICE, candidate)

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]
    await restarted.join()

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names()[-1] == "Rollback"
    assert platform.current_route(SERVICE) == live1
    assert platform.route_history[-1] == (SERVICE, live1)
    assert candidate not in platform.replica_sets
    state = restarted.switcher.load_state()
    assert state.phase == DeploymentPhase.IDLE
    assert state.live_set_id == live1
    assert restarted.controller.get(live1).role == ReplicaSetRole.BLUE


@pytest.mark.asyncio
async def test_recover_settles_run_that_already_committed(make_sequencer, platform):
    await deliver(make_sequencer(), "rev1")
    crashed = make_sequencer(fast_settings(termination_wait=5.0))
    run_id = await crashed.on_new_revision("rev2")
    await approve(crashed, run_id)
    await crash_while(crashed, lambda: committed_by(crashed, run_id))
    # Etat libéré, mais le run n'a jamais été clôturé
    switcher = crashed.switcher
    switcher.apply_transition(
        switcher.load_state(), active_run_id=None, candidate_set_id=None, previous_live_set_id=None
    )

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]

    assert restarted._task is None
    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.SUCCEEDED
    assert outcomes(run)[-1] == ("Commit", StageOutcome.SUCCEEDED)
    assert run.stages[-1].detail == "recovered"


@pytest.mark.asyncio
async def test_recover_settles_run_already_rolled_back(make_sequencer, platform):
    probe = HealthProbe(path="/", probe_timeout=0.5, start_period=0.0, unhealthy_threshold=None)
    crashed = make_sequencer(fast_settings(probe=probe, pre_check_timeout=5.0))
    platform.set_image_health(image_for("rev1"), False)
    run_id = await crashed.on_new_revision("rev1")
    await crash_while(crashed, lambda: crashed.switcher.load_state().phase == DeploymentPhase.PRE_CHECK)
    await crashed.rollback_manager.rollback(run_id, reason="interrupted")

    restarted = make_sequencer()
    assert await restarted.recover() == [run_id]

    run = restarted.get_run(run_id)
    assert run.outcome == RunOutcome.ROLLED_BACK
    assert run.stage_names() == ["Source", "Build", "Deploy", "Rollback"]


@pytest.mark.asyncio
async def test_recover_settles_run_that_never_deployed(make_sequencer):
    stranded = make_sequencer()._reserve("rev1")

    restarted = make_sequencer()
    assert await restarted.recover() == [stranded.run_id]

    run = restarted.get_run(stranded.run_id)
    assert run.outcome == RunOutcome.FAILED
    assert run.stages == []
