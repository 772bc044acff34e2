from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class LedgerClient(ABC):
    """
    Port for the on-chain program holding escrow and round state.

    Writes return a transaction identifier; `confirm` resolves it to success or failure.
    """

    @abstractmethod
    async def get_round_snapshot(self) -> Optional[Dict[str, Any]]:
        """Raw account view of the current round, or None when no round exists."""

    @abstractmethod
    async def close_window(self) -> str:
        """Close the wager window (and request randomness). Returns a transaction id."""

    @abstractmethod
    async def select_winner_and_payout(self, randomness_handle: Optional[str]) -> str:
        """Select the winner from fulfilled randomness and pay out. Returns a transaction id."""

    @abstractmethod
    async def confirm(self, transaction_id: str, *, timeout_seconds: float) -> bool:
        """Wait (bounded) for the transaction to land; False when it failed."""


class RandomnessOracle(ABC):
    """Port for the verifiable randomness service."""

    @abstractmethod
    async def check_fulfilled(self, randomness_handle: str) -> bool:
        """Whether the request behind `randomness_handle` has been fulfilled."""
