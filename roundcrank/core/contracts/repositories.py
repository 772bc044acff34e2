from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from roundcrank.domain.records import (
    EventLogEntry,
    GameMirror,
    JobAction,
    MirrorUpdate,
    RoundPhase,
    RoundSnapshot,
    ScheduledJob,
)


class JobRepository(ABC):
    """Port for the Idempotency Ledger of scheduled jobs."""

    @abstractmethod
    async def is_scheduled(self, round_id: int, action: JobAction) -> bool: ...

    @abstractmethod
    async def record_scheduled(self, job_id: str, round_id: int, action: JobAction, scheduled_at: float) -> ScheduledJob: ...

    @abstractmethod
    async def update_attempt(self, round_id: int, action: JobAction, *, job_id: str, attempt: int, scheduled_at: float) -> Optional[ScheduledJob]: ...

    @abstractmethod
    async def mark_completed(self, round_id: int, action: JobAction) -> bool: ...

    @abstractmethod
    async def mark_failed(self, round_id: int, action: JobAction, reason: str) -> bool: ...

    @abstractmethod
    async def get_pending(self, round_id: int, action: JobAction) -> Optional[ScheduledJob]: ...

    @abstractmethod
    async def list_for_round(self, round_id: int) -> List[ScheduledJob]: ...

    @abstractmethod
    async def purge_settled_before(self, cutoff: float) -> int: ...


class MirrorRepository(ABC):
    """Port for the UI-facing GameMirror projection."""

    @abstractmethod
    async def get(self, round_id: int) -> Optional[GameMirror]: ...

    @abstractmethod
    async def get_latest(self) -> Optional[GameMirror]: ...

    @abstractmethod
    async def upsert_snapshot(self, snapshot: RoundSnapshot, observed_at: float) -> MirrorUpdate: ...

    @abstractmethod
    async def ensure(self, snapshot: RoundSnapshot, observed_at: float) -> bool: ...

    @abstractmethod
    async def advance_phase(self, round_id: int, phase: RoundPhase, updated_at: float) -> bool: ...

    @abstractmethod
    async def touch(self, round_id: int, checked_at: float) -> None: ...

    @abstractmethod
    async def list_unfinished(self) -> List[GameMirror]: ...


class EventLogRepository(ABC):
    """Port for the append-only audit trail."""

    @abstractmethod
    async def append(self, entry: EventLogEntry) -> None: ...

    @abstractmethod
    async def list_for_round(self, round_id: int, limit: int = 100) -> List[EventLogEntry]: ...

    @abstractmethod
    async def purge_before(self, cutoff: float) -> int: ...
