from __future__ import annotations

from typing import Any, Dict, Optional

from roundcrank.core.contracts.ledger import LedgerClient
from roundcrank.domain.records import RoundSnapshot

# Ledger status for "no round in progress"; surfaces as NotFound (None).
IDLE_STATUS = "idle"


def normalize_round(raw: Dict[str, Any]) -> Optional[RoundSnapshot]:
    """
    Validates a raw ledger account view into a RoundSnapshot.
    Raises pydantic.ValidationError on malformed input.
    """
    data = dict(raw)
    status = str(data.get("status") or data.get("phase") or "").strip()
    if status == IDLE_STATUS:
        return None
    if "bets" in data and not any(k in data for k in ("wager_count", "wagerCount", "betCount")):
        data["wagerCount"] = len(data.get("bets") or [])
    return RoundSnapshot.model_validate(data)


class RoundSnapshotReader:
    """
    Reads the current round from the ledger.
    Performs no retries; transport and decode errors reach the caller unchanged.
    """

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def read(self) -> Optional[RoundSnapshot]:
        raw = await self.ledger.get_round_snapshot()
        if raw is None:
            return None
        return normalize_round(raw)
