"""
In-process simulated ledger and randomness oracle.

Enforces the same phase preconditions as the on-chain program: the window closes only
after `endTime`, winner selection needs fulfilled randomness, and a payout advances the
round counter. Sends are validated when issued and applied when confirmed, so two
overlapping sends for the same transition land at most once.
"""
from __future__ import annotations

import hashlib
import itertools
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from roundcrank.core.contracts.ledger import LedgerClient, RandomnessOracle
from roundcrank.domain.records import DEFAULT_IDENTITY, RoundPhase
from roundcrank.exceptions import LedgerRejectedError, LedgerTimeoutError, OracleError


@dataclass
class SimulatedRound:
    round_id: int
    start_time: int
    end_time: int
    status: RoundPhase = RoundPhase.WAITING
    bets: List[Tuple[str, int]] = field(default_factory=list)
    winner: Optional[str] = None
    randomness_handle: Optional[str] = None

    @property
    def pot(self) -> int:
        return sum(amount for _, amount in self.bets)


@dataclass
class _PendingTransaction:
    kind: str
    round_id: int
    randomness_handle: Optional[str] = None


class InMemoryLedger(LedgerClient, RandomnessOracle):
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        waiting_duration_seconds: int = 30,
        fulfill_delay_seconds: Optional[float] = None,
        first_round_id: int = 0,
    ):
        self.clock = clock
        self.waiting_duration_seconds = int(waiting_duration_seconds)
        # None means the oracle only fulfills through `fulfill()`.
        self.fulfill_delay_seconds = fulfill_delay_seconds
        self.counter = int(first_round_id)
        self.rounds: Dict[int, SimulatedRound] = {}
        self.balances: Dict[str, int] = {}
        self.write_calls: List[str] = []
        self.applied: List[Tuple[str, int]] = []
        self.read_calls = 0
        self.oracle_calls = 0
        self._tx_ids = itertools.count(1)
        self._pending: Dict[str, _PendingTransaction] = {}
        self._fulfilled: set[str] = set()
        self._requested_at: Dict[str, float] = {}
        self._reject_next: Optional[str] = None
        self._drop_next_confirmation = False
        self._partial_next_payout = False
        self._oracle_failures = 0

    # --- game setup -------------------------------------------------------

    def create_round(self, start_time: Optional[float] = None) -> int:
        latest = self.rounds.get(self.counter)
        if latest is not None:
            # The counter only moves past a round once it is fully paid out.
            raise LedgerRejectedError(f"Round {latest.round_id} is still {latest.status.value}")
        start = int(self.clock() if start_time is None else start_time)
        round_id = self.counter
        self.rounds[round_id] = SimulatedRound(
            round_id=round_id,
            start_time=start,
            end_time=start + self.waiting_duration_seconds,
        )
        return round_id

    def place_wager(self, player: str, amount: int) -> None:
        current = self.rounds.get(self.counter)
        if current is None or current.status != RoundPhase.WAITING:
            raise LedgerRejectedError("No round is accepting wagers")
        if self.clock() >= current.end_time:
            raise LedgerRejectedError(f"Wager window of round {current.round_id} has closed")
        if amount <= 0:
            raise LedgerRejectedError("Wager amount must be positive")
        current.bets.append((str(player), int(amount)))

    def fulfill(self, randomness_handle: str) -> None:
        self._fulfilled.add(randomness_handle)

    # --- failure injection ------------------------------------------------

    def reject_next_send(self, reason: str = "injected rejection") -> None:
        self._reject_next = reason

    def drop_next_confirmation(self) -> None:
        """The next confirmed transaction lands but its confirmation times out."""
        self._drop_next_confirmation = True

    def partial_next_payout(self) -> None:
        """The next payout finishes the round without advancing the round counter."""
        self._partial_next_payout = True

    def fail_oracle_checks(self, count: int = 1) -> None:
        self._oracle_failures = int(count)

    # --- LedgerClient -----------------------------------------------------

    def _latest(self) -> Optional[SimulatedRound]:
        if self.counter in self.rounds:
            return self.rounds[self.counter]
        if self.counter - 1 in self.rounds:
            return self.rounds[self.counter - 1]
        return None

    def _is_fulfilled(self, handle: Optional[str]) -> bool:
        if handle is None:
            return False
        if handle in self._fulfilled:
            return True
        requested_at = self._requested_at.get(handle)
        if self.fulfill_delay_seconds is None or requested_at is None:
            return False
        return self.clock() >= requested_at + self.fulfill_delay_seconds

    async def get_round_snapshot(self) -> Optional[Dict[str, Any]]:
        self.read_calls += 1
        current = self._latest()
        if current is None:
            return None
        return {
            "roundId": current.round_id,
            "status": current.status.value,
            "startTimestamp": current.start_time,
            "endTimestamp": current.end_time,
            "betCount": len(current.bets),
            "totalPot": current.pot,
            "winner": current.winner or DEFAULT_IDENTITY,
            "vrfRequestPubkey": current.randomness_handle or DEFAULT_IDENTITY,
            "randomnessFulfilled": self._is_fulfilled(current.randomness_handle),
            "currentRoundId": self.counter,
        }

    def _check_injected_rejection(self) -> None:
        if self._reject_next is not None:
            reason, self._reject_next = self._reject_next, None
            raise LedgerRejectedError(reason)

    def _can_close(self, current: Optional[SimulatedRound]) -> bool:
        return (
            current is not None
            and current.round_id == self.counter
            and current.status == RoundPhase.WAITING
            and self.clock() >= current.end_time
        )

    def _can_select(self, current: Optional[SimulatedRound]) -> bool:
        if current is None or current.round_id != self.counter:
            return False
        if current.status == RoundPhase.AWAITING_RANDOMNESS:
            return self._is_fulfilled(current.randomness_handle)
        # A payout that finished the round but never advanced the counter can be completed.
        return current.status == RoundPhase.FINISHED

    def _new_tx(self, pending: _PendingTransaction) -> str:
        tx_id = f"tx-{next(self._tx_ids)}"
        self._pending[tx_id] = pending
        return tx_id

    async def close_window(self) -> str:
        self.write_calls.append("close_window")
        self._check_injected_rejection()
        current = self._latest()
        if not self._can_close(current):
            raise LedgerRejectedError("close_window precondition does not hold")
        return self._new_tx(_PendingTransaction(kind="close_window", round_id=current.round_id))

    async def select_winner_and_payout(self, randomness_handle: Optional[str]) -> str:
        self.write_calls.append("select_winner")
        self._check_injected_rejection()
        current = self._latest()
        if not self._can_select(current):
            raise LedgerRejectedError("select_winner precondition does not hold")
        return self._new_tx(
            _PendingTransaction(kind="select_winner", round_id=current.round_id, randomness_handle=randomness_handle)
        )

    async def confirm(self, transaction_id: str, *, timeout_seconds: float) -> bool:
        pending = self._pending.pop(transaction_id, None)
        if pending is None:
            return False
        current = self._latest()
        if current is None or current.round_id != pending.round_id:
            return False
        if pending.kind == "close_window":
            landed = self._apply_close(current)
        else:
            landed = self._apply_payout(current)
        if landed:
            self.applied.append((pending.kind, pending.round_id))
        if landed and self._drop_next_confirmation:
            self._drop_next_confirmation = False
            raise LedgerTimeoutError(f"Confirmation for {transaction_id} was lost")
        return landed

    def _apply_close(self, current: SimulatedRound) -> bool:
        if not self._can_close(current):
            return False
        if len(current.bets) <= 1:
            # Refund the lone wager (if any) and move straight on to the next round.
            for player, amount in current.bets:
                self.balances[player] = self.balances.get(player, 0) + amount
            current.status = RoundPhase.FINISHED
            self.counter += 1
            return True
        handle = f"vrf-{current.round_id}"
        current.randomness_handle = handle
        current.status = RoundPhase.AWAITING_RANDOMNESS
        self._requested_at[handle] = self.clock()
        return True

    def _apply_payout(self, current: SimulatedRound) -> bool:
        if not self._can_select(current):
            return False
        if current.status == RoundPhase.AWAITING_RANDOMNESS:
            current.winner = self._pick_winner(current)
            self.balances[current.winner] = self.balances.get(current.winner, 0) + current.pot
            current.status = RoundPhase.FINISHED
        if self._partial_next_payout:
            self._partial_next_payout = False
            return True
        self.counter += 1
        return True

    @staticmethod
    def _pick_winner(current: SimulatedRound) -> str:
        """Wager-weighted draw seeded by the round's randomness handle."""
        seed = int.from_bytes(hashlib.sha256(str(current.randomness_handle).encode("utf-8")).digest()[:8], "big")
        rng = random.Random(seed)
        target = rng.uniform(0, current.pot)
        running = 0
        for player, amount in current.bets:
            running += amount
            if target < running:
                return player
        return current.bets[-1][0]

    # --- RandomnessOracle -------------------------------------------------

    async def check_fulfilled(self, randomness_handle: str) -> bool:
        self.oracle_calls += 1
        if self._oracle_failures > 0:
            self._oracle_failures -= 1
            raise OracleError("oracle unavailable")
        return self._is_fulfilled(randomness_handle)
