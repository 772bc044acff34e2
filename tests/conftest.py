import pytest
from typing import Iterable, Tuple

from roundcrank.adapters.ledger.memory_ledger import InMemoryLedger
from roundcrank.runtime.crank_runtime import CrankRuntime
from roundcrank.settings import CrankConfig

T0 = 1_700_000_000.0
ROUND_ID = 42


class FakeClock:
    """Manually advanced wall clock shared by the ledger and the crank."""

    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def test_root(tmp_path):
    root = tmp_path / "crank"
    root.mkdir()
    return root


@pytest.fixture
def db_path(test_root):
    return str(test_root / "roundcrank.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(clock=clock, waiting_duration_seconds=30, first_round_id=ROUND_ID)


@pytest.fixture
def config(db_path, test_root):
    return CrankConfig(
        db_path=db_path,
        workspace=str(test_root / "workspace"),
        rpc_endpoint="http://ledger.test",
        authority_key="test-authority",
        confirm_timeout_seconds=5,
    )


@pytest.fixture
def runtime(config, ledger, clock):
    return CrankRuntime(config, ledger=ledger, oracle=ledger, clock=clock, require_credentials=False)


@pytest.fixture
def open_round(ledger, clock):
    """Creates a round at the current fake time and places the given wagers."""

    def _open(wagers: Iterable[Tuple[str, int]] = (("alice", 300), ("bob", 700))) -> int:
        round_id = ledger.create_round(start_time=clock())
        for player, amount in wagers:
            ledger.place_wager(player, amount)
        return round_id

    return _open


@pytest.fixture
def awaiting_round(open_round, ledger, clock):
    """A round whose window has been closed on the ledger; randomness not yet fulfilled."""

    async def _make() -> int:
        round_id = open_round()
        clock.advance(32)
        tx = await ledger.close_window()
        assert await ledger.confirm(tx, timeout_seconds=1)
        return round_id

    return _make
