from __future__ import annotations
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, AliasChoices

# Ledger default identity; a winner equal to it means "no winner yet".
DEFAULT_IDENTITY = "11111111111111111111111111111111"


class RoundPhase(str, Enum):
    WAITING = "waiting"
    AWAITING_RANDOMNESS = "awaitingWinnerRandomness"
    FINISHED = "finished"


class JobAction(str, Enum):
    CLOSE_WINDOW = "close_window"
    POLL_RANDOMNESS = "poll_randomness"


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transition(str, Enum):
    CLOSE_WINDOW = "close_window"
    SELECT_WINNER = "select_winner"

    @property
    def job_action(self) -> JobAction:
        if self is Transition.CLOSE_WINDOW:
            return JobAction.CLOSE_WINDOW
        return JobAction.POLL_RANDOMNESS


class RoundSnapshot(BaseModel):
    """
    Canonical, immutable view of one ledger read.
    Accepts both the ledger's camelCase account layout and snake_case documents.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    round_id: int = Field(..., ge=0, validation_alias=AliasChoices("round_id", "roundId"))
    phase: RoundPhase = Field(..., validation_alias=AliasChoices("phase", "status"))
    start_time: int = Field(..., validation_alias=AliasChoices("start_time", "startTime", "startTimestamp"))
    end_time: int = Field(..., validation_alias=AliasChoices("end_time", "endTime", "endTimestamp"))
    wager_count: int = Field(default=0, ge=0, validation_alias=AliasChoices("wager_count", "wagerCount", "betCount"))
    total_pot: int = Field(default=0, ge=0, validation_alias=AliasChoices("total_pot", "totalPot", "initialPot"))
    winner: Optional[str] = None
    randomness_handle: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("randomness_handle", "randomnessHandle", "vrfRequestPubkey")
    )
    randomness_fulfilled: bool = Field(
        default=False, validation_alias=AliasChoices("randomness_fulfilled", "randomnessFulfilled")
    )
    # Round counter read alongside the round; None when the ledger does not expose it.
    counter_round_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("counter_round_id", "counterRoundId", "currentRoundId")
    )

    @field_validator("winner", "randomness_handle", mode="before")
    @classmethod
    def _blank_identity(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        if not text or text == DEFAULT_IDENTITY:
            return None
        return text

    @property
    def round_advanced(self) -> bool:
        """True once the ledger's round counter has moved past this round."""
        if self.counter_round_id is None:
            return True
        return self.counter_round_id > self.round_id


class ScheduledJob(BaseModel):
    """Idempotency Ledger entry for one scheduled action of one round."""
    id: Optional[int] = None
    job_id: str
    round_id: int
    action: JobAction
    scheduled_at: float
    status: JobStatus = JobStatus.PENDING
    attempt: int = 1
    error: Optional[str] = None
    created_at: Optional[float] = None
    completed_at: Optional[float] = None


class GameMirror(BaseModel):
    """
    Off-chain projection of a round for the UI.
    Derived from RoundSnapshot; never authoritative.
    """
    round_id: int
    phase: RoundPhase
    start_time: int
    end_time: int
    wager_count: int = 0
    total_pot: int = 0
    winner: Optional[str] = None
    randomness_handle: Optional[str] = None
    randomness_fulfilled: bool = False
    last_checked: Optional[float] = None
    last_updated: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snapshot: RoundSnapshot, observed_at: float) -> "GameMirror":
        return cls(
            round_id=snapshot.round_id,
            phase=snapshot.phase,
            start_time=snapshot.start_time,
            end_time=snapshot.end_time,
            wager_count=snapshot.wager_count,
            total_pot=snapshot.total_pot,
            winner=snapshot.winner,
            randomness_handle=snapshot.randomness_handle,
            randomness_fulfilled=snapshot.randomness_fulfilled,
            last_checked=observed_at,
            last_updated=observed_at,
        )

    def public_view(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "phase": self.phase.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "participants": self.wager_count,
            "pot": self.total_pot,
            "winner": self.winner,
            "last_updated": self.last_updated,
        }


class EventLogEntry(BaseModel):
    """Append-only audit record. Written by the crank, read only for diagnosis."""
    id: Optional[int] = None
    round_id: Optional[int] = None
    event: str
    success: bool = True
    transition: Optional[str] = None
    tx_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[float] = None


class MirrorUpdate(BaseModel):
    """Outcome of applying a snapshot to the mirror."""
    round_id: int
    previous_phase: Optional[RoundPhase] = None
    phase: RoundPhase
    created: bool = False
    changed: bool = False
    regression: bool = False
