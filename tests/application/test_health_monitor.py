import pytest

from roundcrank.application.services.health_monitor import DEGRADED, HEALTHY, UNHEALTHY
from roundcrank.exceptions import LedgerTimeoutError

ROUND_ID = 42


@pytest.mark.asyncio
async def test_all_components_healthy(runtime, open_round):
    open_round()
    await runtime.observe_once()

    report = await runtime.health.check()

    assert report.healthy
    assert set(report.components) == {"ledger", "store", "rounds"}
    assert report.components["ledger"].latency_ms is not None
    assert report.stuck_rounds == []


@pytest.mark.asyncio
async def test_unreachable_ledger_is_unhealthy(runtime, ledger, monkeypatch):
    async def broken():
        raise LedgerTimeoutError("rpc timeout")

    monkeypatch.setattr(ledger, "get_round_snapshot", broken)
    report = await runtime.health.check()

    assert report.status == UNHEALTHY
    assert report.components["ledger"].detail == "rpc timeout"
    assert report.components["store"].status == HEALTHY


@pytest.mark.asyncio
async def test_round_without_progress_is_flagged(runtime, open_round, clock):
    open_round()
    await runtime.observe_once()
    clock.advance(301)

    report = await runtime.health.check()

    assert report.status == DEGRADED
    assert report.stuck_rounds == [ROUND_ID]
    events = [e.event for e in await runtime.events.list_for_round(ROUND_ID)]
    assert "round_stuck_detected" in events
