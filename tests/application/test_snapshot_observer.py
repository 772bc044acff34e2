import pytest

from roundcrank.application.services.scheduler_orchestrator import DecisionKind
from roundcrank.domain.records import JobAction, RoundPhase, RoundSnapshot

ROUND_ID = 42


@pytest.mark.asyncio
async def test_first_observation_mirrors_and_schedules(runtime, open_round):
    open_round()

    result = await runtime.observe_once()

    assert result.update.created is True
    assert result.decision.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW
    mirror = await runtime.mirror.get(ROUND_ID)
    assert mirror.phase == RoundPhase.WAITING
    assert mirror.total_pot == 1000
    events = await runtime.events.list_for_round(ROUND_ID)
    assert [e.event for e in events] == ["phase_observed"]
    assert events[0].metadata["phase"] == "waiting"


@pytest.mark.asyncio
async def test_repeat_observation_is_quiet(runtime, open_round):
    open_round()
    await runtime.observe_once()
    result = await runtime.observe_once()

    assert result.update.changed is False
    assert result.decision.kind == DecisionKind.NOOP
    assert len(await runtime.events.list_for_round(ROUND_ID)) == 1


@pytest.mark.asyncio
async def test_phase_change_is_audited(runtime, ledger, open_round, clock):
    open_round()
    await runtime.observe_once()
    clock.advance(31)
    tx = await ledger.close_window()
    await ledger.confirm(tx, timeout_seconds=1)

    result = await runtime.observe_once()

    assert result.update.previous_phase == RoundPhase.WAITING
    assert result.decision.kind == DecisionKind.SCHEDULE_POLL
    observed = [e for e in await runtime.events.list_for_round(ROUND_ID) if e.event == "phase_observed"]
    assert [e.metadata["phase"] for e in observed] == ["waiting", "awaitingWinnerRandomness"]


@pytest.mark.asyncio
async def test_stale_regressed_read_is_ignored(runtime, ledger, awaiting_round, monkeypatch):
    await awaiting_round()
    await runtime.observe_once()
    stale = {
        "roundId": ROUND_ID,
        "status": "waiting",
        "startTimestamp": 0,
        "endTimestamp": 30,
        "currentRoundId": ROUND_ID,
    }

    async def lagging_node():
        return stale

    monkeypatch.setattr(ledger, "get_round_snapshot", lagging_node)
    result = await runtime.observe_once()

    assert result.update.regression is True
    assert result.decision is None
    assert (await runtime.mirror.get(ROUND_ID)).phase == RoundPhase.AWAITING_RANDOMNESS
    assert await runtime.jobs.is_scheduled(ROUND_ID, JobAction.CLOSE_WINDOW) is False


@pytest.mark.asyncio
async def test_ledger_reset_is_not_reconciled(runtime, ledger, open_round):
    open_round()
    await runtime.mirror.upsert_snapshot(
        RoundSnapshot(round_id=ROUND_ID + 5, phase=RoundPhase.FINISHED, start_time=0, end_time=30), 1.0
    )

    result = await runtime.observe_once()

    assert result.ledger_reset is True
    assert await runtime.mirror.get(ROUND_ID) is None
    assert await runtime.scheduler.list_tasks() == []


@pytest.mark.asyncio
async def test_dry_run_observation_writes_nothing(runtime, open_round):
    open_round()
    result = await runtime.observe_once(dry_run=True)

    assert result.decision.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW
    assert await runtime.mirror.get(ROUND_ID) is None
    assert await runtime.scheduler.list_tasks() == []


@pytest.mark.asyncio
async def test_no_round_yet(runtime):
    result = await runtime.observe_once()
    assert result.snapshot is None
    assert result.error is None
