import pytest

from roundcrank.domain.records import RoundPhase, RoundSnapshot
from roundcrank.exceptions import LedgerRejectedError, LedgerTimeoutError, OracleError

ROUND_ID = 42


async def _snapshot(ledger):
    return RoundSnapshot.model_validate(await ledger.get_round_snapshot())


async def _land_close(ledger):
    tx = await ledger.close_window()
    return await ledger.confirm(tx, timeout_seconds=1)


@pytest.mark.asyncio
async def test_snapshot_uses_account_layout(ledger, open_round):
    open_round()
    raw = await ledger.get_round_snapshot()
    assert raw["roundId"] == ROUND_ID
    assert raw["status"] == "waiting"
    assert raw["betCount"] == 2
    assert raw["totalPot"] == 1000
    assert raw["currentRoundId"] == ROUND_ID

    snapshot = await _snapshot(ledger)
    assert snapshot.winner is None
    assert snapshot.randomness_handle is None
    assert snapshot.round_advanced is False


@pytest.mark.asyncio
async def test_empty_ledger_has_no_round(ledger):
    assert await ledger.get_round_snapshot() is None


@pytest.mark.asyncio
async def test_close_before_end_time_is_rejected(ledger, open_round, clock):
    open_round()
    with pytest.raises(LedgerRejectedError):
        await ledger.close_window()
    clock.advance(30)
    assert await _land_close(ledger) is True
    snapshot = await _snapshot(ledger)
    assert snapshot.phase == RoundPhase.AWAITING_RANDOMNESS
    assert snapshot.randomness_handle == f"vrf-{ROUND_ID}"


@pytest.mark.asyncio
async def test_wagers_rejected_after_window(ledger, open_round, clock):
    open_round()
    clock.advance(30)
    with pytest.raises(LedgerRejectedError):
        ledger.place_wager("carol", 10)


@pytest.mark.asyncio
async def test_single_wager_round_is_refunded(ledger, open_round, clock):
    open_round(wagers=(("alice", 250),))
    clock.advance(31)
    assert await _land_close(ledger) is True

    assert ledger.balances == {"alice": 250}
    assert ledger.counter == ROUND_ID + 1
    snapshot = await _snapshot(ledger)
    assert snapshot.phase == RoundPhase.FINISHED
    assert snapshot.round_advanced is True
    assert ledger.create_round() == ROUND_ID + 1


@pytest.mark.asyncio
async def test_select_requires_fulfilled_randomness(ledger, awaiting_round):
    await awaiting_round()
    with pytest.raises(LedgerRejectedError):
        await ledger.select_winner_and_payout(f"vrf-{ROUND_ID}")

    ledger.fulfill(f"vrf-{ROUND_ID}")
    tx = await ledger.select_winner_and_payout(f"vrf-{ROUND_ID}")
    assert await ledger.confirm(tx, timeout_seconds=1) is True

    snapshot = await _snapshot(ledger)
    assert snapshot.phase == RoundPhase.FINISHED
    assert snapshot.winner in {"alice", "bob"}
    assert ledger.balances == {snapshot.winner: 1000}
    assert ledger.counter == ROUND_ID + 1


@pytest.mark.asyncio
async def test_winner_draw_is_deterministic_per_handle(ledger, awaiting_round):
    await awaiting_round()
    current = ledger.rounds[ROUND_ID]
    assert ledger._pick_winner(current) == ledger._pick_winner(current)


@pytest.mark.asyncio
async def test_overlapping_sends_land_once(ledger, open_round, clock):
    open_round()
    clock.advance(30)
    first = await ledger.close_window()
    second = await ledger.close_window()

    assert await ledger.confirm(first, timeout_seconds=1) is True
    assert await ledger.confirm(second, timeout_seconds=1) is False
    assert ledger.applied == [("close_window", ROUND_ID)]


@pytest.mark.asyncio
async def test_partial_payout_can_be_resumed(ledger, awaiting_round):
    await awaiting_round()
    ledger.fulfill(f"vrf-{ROUND_ID}")
    ledger.partial_next_payout()
    tx = await ledger.select_winner_and_payout(f"vrf-{ROUND_ID}")
    assert await ledger.confirm(tx, timeout_seconds=1) is True

    snapshot = await _snapshot(ledger)
    assert snapshot.phase == RoundPhase.FINISHED
    assert snapshot.round_advanced is False
    winner = snapshot.winner

    tx = await ledger.select_winner_and_payout(f"vrf-{ROUND_ID}")
    assert await ledger.confirm(tx, timeout_seconds=1) is True
    assert ledger.counter == ROUND_ID + 1
    # The pot is paid once.
    assert ledger.balances == {winner: 1000}


@pytest.mark.asyncio
async def test_dropped_confirmation_still_lands(ledger, open_round, clock):
    open_round()
    clock.advance(30)
    ledger.drop_next_confirmation()
    tx = await ledger.close_window()
    with pytest.raises(LedgerTimeoutError):
        await ledger.confirm(tx, timeout_seconds=1)
    assert (await _snapshot(ledger)).phase == RoundPhase.AWAITING_RANDOMNESS


@pytest.mark.asyncio
async def test_failure_injection(ledger, open_round, clock):
    open_round()
    clock.advance(30)
    ledger.reject_next_send("blockhash expired")
    with pytest.raises(LedgerRejectedError, match="blockhash expired"):
        await ledger.close_window()
    assert ledger.write_calls == ["close_window"]

    ledger.fail_oracle_checks(1)
    with pytest.raises(OracleError):
        await ledger.check_fulfilled("vrf-x")
    assert await ledger.check_fulfilled("vrf-x") is False


@pytest.mark.asyncio
async def test_oracle_fulfills_after_delay(clock):
    from roundcrank.adapters.ledger.memory_ledger import InMemoryLedger

    ledger = InMemoryLedger(clock=clock, fulfill_delay_seconds=4)
    ledger.create_round()
    ledger.place_wager("a", 1)
    ledger.place_wager("b", 1)
    clock.advance(30)
    await _land_close(ledger)
    assert await ledger.check_fulfilled("vrf-0") is False
    clock.advance(4)
    assert await ledger.check_fulfilled("vrf-0") is True


def test_new_round_rejected_while_current_unfinished(ledger, open_round):
    open_round()
    with pytest.raises(LedgerRejectedError):
        ledger.create_round()
