import pytest

from roundcrank.domain.records import JobAction, JobStatus, RoundPhase

T0 = 1_700_000_000.0
ROUND_ID = 42


@pytest.mark.asyncio
async def test_round_42_runs_to_payout(runtime, ledger, open_round, clock):
    open_round()
    clock.advance(32)

    # First observation after the window ended: close is queued with zero delay.
    observed = await runtime.observe_once()
    assert observed.decision.delay_ms == 0
    close_task = (await runtime.scheduler.list_tasks())[0]
    assert close_task["handler"] == "close_window"
    assert close_task["run_at"] == T0 + 32

    await runtime.scheduler.run_due()
    assert ledger.applied == [("close_window", ROUND_ID)]
    mirror = await runtime.mirror.get(ROUND_ID)
    assert mirror.phase == RoundPhase.AWAITING_RANDOMNESS

    # Poll attempt 1 at T+34 finds nothing; attempt 2 is queued for T+36.
    clock.advance(2)
    await runtime.scheduler.run_due()
    poll = await runtime.jobs.get_pending(ROUND_ID, JobAction.POLL_RANDOMNESS)
    assert poll.attempt == 2

    ledger.fulfill(f"vrf-{ROUND_ID}")
    clock.advance(2)
    await runtime.scheduler.run_due()

    mirror = await runtime.mirror.get(ROUND_ID)
    assert mirror.phase == RoundPhase.FINISHED
    assert mirror.winner in {"alice", "bob"}
    assert ledger.balances == {mirror.winner: 1000}
    assert ledger.applied == [("close_window", ROUND_ID), ("select_winner", ROUND_ID)]
    jobs = await runtime.jobs.list_for_round(ROUND_ID)
    assert {(j.action, j.status) for j in jobs} == {
        (JobAction.CLOSE_WINDOW, JobStatus.COMPLETED),
        (JobAction.POLL_RANDOMNESS, JobStatus.COMPLETED),
    }

    # Nothing left to do: later passes stay quiet.
    clock.advance(60)
    assert (await runtime.recover_once()).action.value == "none"
    await runtime.observe_once()
    assert await runtime.scheduler.run_due() == 0
    assert ledger.write_calls == ["close_window", "select_winner"]


@pytest.mark.asyncio
async def test_consecutive_rounds_are_independent(runtime, ledger, open_round, clock):
    for expected in (ROUND_ID, ROUND_ID + 1):
        assert open_round() == expected
        await runtime.observe_once()
        clock.advance(32)
        await runtime.scheduler.run_due()
        ledger.fulfill(f"vrf-{expected}")
        clock.advance(2)
        await runtime.scheduler.run_due()
        assert (await runtime.mirror.get(expected)).phase == RoundPhase.FINISHED

    assert ledger.counter == ROUND_ID + 2
    assert (await runtime.mirror.get_latest()).round_id == ROUND_ID + 1
