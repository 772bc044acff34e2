import asyncio

import pytest

from roundcrank.application.services.scheduler_orchestrator import DecisionKind
from roundcrank.domain.records import JobAction, JobStatus, RoundSnapshot

T0 = 1_700_000_000.0
ROUND_ID = 42


def _snap(phase="waiting", **extra):
    data = {
        "round_id": ROUND_ID,
        "phase": phase,
        "start_time": int(T0),
        "end_time": int(T0) + 30,
        "wager_count": 2,
        "counter_round_id": ROUND_ID,
    }
    data.update(extra)
    return RoundSnapshot.model_validate(data)


@pytest.mark.asyncio
async def test_close_window_delay_includes_buffer(runtime, clock):
    orchestrator = runtime.orchestrator
    assert orchestrator.close_window_delay_ms(_snap(), clock()) == 32_000
    assert orchestrator.close_window_delay_ms(_snap(), clock() + 31.5) == 500
    assert orchestrator.close_window_delay_ms(_snap(), clock() + 100) == 0


@pytest.mark.asyncio
async def test_waiting_schedules_close_once(runtime):
    first = await runtime.orchestrator.on_snapshot_observed(_snap())
    second = await runtime.orchestrator.on_snapshot_observed(_snap())

    assert first.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW
    assert first.delay_ms == 32_000
    assert second.kind == DecisionKind.NOOP
    tasks = await runtime.scheduler.list_tasks()
    assert [(t["handler"], t["payload"]) for t in tasks] == [
        ("close_window", {"round_id": ROUND_ID, "job_id": first.job_id})
    ]
    jobs = await runtime.jobs.list_for_round(ROUND_ID)
    assert [(j.action, j.job_id) for j in jobs] == [(JobAction.CLOSE_WINDOW, first.job_id)]


@pytest.mark.asyncio
async def test_concurrent_observations_keep_one_job(runtime):
    decisions = await asyncio.gather(*(runtime.orchestrator.on_snapshot_observed(_snap()) for _ in range(4)))

    pending = [j for j in await runtime.jobs.list_for_round(ROUND_ID) if j.status == JobStatus.PENDING]
    assert len(pending) == 1
    scheduled = {d.job_id for d in decisions if d.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW}
    assert scheduled == {pending[0].job_id}


@pytest.mark.asyncio
async def test_awaiting_settles_close_and_schedules_first_poll(runtime):
    await runtime.orchestrator.on_snapshot_observed(_snap())
    decision = await runtime.orchestrator.on_snapshot_observed(
        _snap(phase="awaitingWinnerRandomness", randomness_handle="vrf-42")
    )

    assert decision.kind == DecisionKind.SCHEDULE_POLL
    assert decision.delay_ms == 2000
    by_action = {j.action: j for j in await runtime.jobs.list_for_round(ROUND_ID)}
    assert by_action[JobAction.CLOSE_WINDOW].status == JobStatus.COMPLETED
    assert by_action[JobAction.POLL_RANDOMNESS].status == JobStatus.PENDING
    assert by_action[JobAction.POLL_RANDOMNESS].attempt == 1
    poll_tasks = [t for t in await runtime.scheduler.list_tasks() if t["handler"] == "poll_randomness"]
    assert [t["payload"] for t in poll_tasks] == [{"round_id": ROUND_ID, "attempt": 1, "job_id": decision.job_id}]
    assert poll_tasks[0]["id"] == decision.job_id


@pytest.mark.asyncio
async def test_finished_settles_everything(runtime):
    await runtime.orchestrator.on_snapshot_observed(_snap())
    await runtime.orchestrator.on_snapshot_observed(_snap(phase="awaitingWinnerRandomness", randomness_handle="h"))
    decision = await runtime.orchestrator.on_snapshot_observed(
        _snap(phase="finished", winner="alice", counter_round_id=ROUND_ID + 1)
    )

    assert decision.kind == DecisionKind.FINALIZE
    statuses = {j.status for j in await runtime.jobs.list_for_round(ROUND_ID)}
    assert statuses == {JobStatus.COMPLETED}


@pytest.mark.asyncio
async def test_decide_and_dry_run_schedule_nothing(runtime):
    decided = await runtime.orchestrator.decide(_snap())
    dry = await runtime.orchestrator.on_snapshot_observed(_snap(), dry_run=True)

    assert decided.kind == dry.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW
    assert await runtime.scheduler.list_tasks() == []
    assert await runtime.jobs.list_for_round(ROUND_ID) == []
