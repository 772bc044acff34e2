from __future__ import annotations

import time
from typing import Callable, Optional

from pydantic import BaseModel

from roundcrank.core.contracts.repositories import EventLogRepository, MirrorRepository
from roundcrank.domain.records import EventLogEntry, MirrorUpdate, RoundSnapshot
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.exceptions import LedgerError
from roundcrank.logging import log_event
from roundcrank.application.services.scheduler_orchestrator import ScheduleDecision, SchedulerOrchestrator


class ObservationResult(BaseModel):
    snapshot: Optional[RoundSnapshot] = None
    update: Optional[MirrorUpdate] = None
    decision: Optional[ScheduleDecision] = None
    ledger_reset: bool = False
    error: Optional[str] = None


class SnapshotObserver:
    """Reads the ledger, projects it into the mirror and feeds the orchestrator."""

    def __init__(
        self,
        *,
        reader: RoundSnapshotReader,
        mirror: MirrorRepository,
        events: EventLogRepository,
        orchestrator: SchedulerOrchestrator,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.mirror = mirror
        self.events = events
        self.orchestrator = orchestrator
        self.clock = clock

    async def observe(self, *, dry_run: bool = False) -> ObservationResult:
        try:
            snapshot = await self.reader.read()
        except (LedgerError, ValueError) as exc:
            log_event("observe_read_failed", error=str(exc), level="warning")
            return ObservationResult(error=str(exc))
        if snapshot is None:
            log_event("observe_no_round", level="debug")
            return ObservationResult()

        if dry_run:
            decision = await self.orchestrator.on_snapshot_observed(snapshot, dry_run=True)
            return ObservationResult(snapshot=snapshot, decision=decision)

        latest = await self.mirror.get_latest()
        if latest is not None and snapshot.round_id < latest.round_id:
            # Round ids never repeat or go backwards; do not reconcile.
            log_event(
                "ledger_reset_detected",
                round_id=snapshot.round_id,
                latest_round_id=latest.round_id,
                phase=snapshot.phase.value,
                level="warning",
            )
            return ObservationResult(snapshot=snapshot, ledger_reset=True)

        now = self.clock()
        update = await self.mirror.upsert_snapshot(snapshot, now)
        if update.regression:
            log_event(
                "phase_regression_ignored",
                round_id=snapshot.round_id,
                phase=snapshot.phase.value,
                mirrored_phase=update.previous_phase.value if update.previous_phase else "",
                level="warning",
            )
            return ObservationResult(snapshot=snapshot, update=update)

        if update.created or (update.previous_phase is not None and update.previous_phase != update.phase):
            await self.events.append(
                EventLogEntry(
                    round_id=snapshot.round_id,
                    event="phase_observed",
                    metadata={
                        "phase": snapshot.phase.value,
                        "previous_phase": update.previous_phase.value if update.previous_phase else None,
                        "wager_count": snapshot.wager_count,
                        "total_pot": snapshot.total_pot,
                    },
                    created_at=now,
                )
            )
            log_event(
                "phase_observed",
                round_id=snapshot.round_id,
                phase=snapshot.phase.value,
                previous_phase=update.previous_phase.value if update.previous_phase else None,
            )

        decision = await self.orchestrator.on_snapshot_observed(snapshot)
        return ObservationResult(snapshot=snapshot, update=update, decision=decision)
