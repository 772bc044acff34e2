"""
Recovery Sweep.

Re-derives what should already have happened from a fresh ledger read and drives the
round forward through the same entry points as the scheduled path. Never consults the
mirror or the audit log to decide; run forever, it completes every round on its own
unless the oracle is stuck.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from roundcrank.core.contracts.ledger import RandomnessOracle
from roundcrank.core.contracts.repositories import EventLogRepository, MirrorRepository
from roundcrank.domain.records import EventLogEntry, RoundPhase, RoundSnapshot, Transition
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.exceptions import LedgerError, OracleError
from roundcrank.logging import log_event
from roundcrank.application.services.scheduler_orchestrator import SchedulerOrchestrator
from roundcrank.application.services.transition_executor import ExecutionStatus, PhaseTransitionExecutor


class RecoveryAction(str, Enum):
    NONE = "none"
    NO_ROUND = "no_round"
    READ_FAILED = "read_failed"
    CLOSE_WINDOW = "close_window"
    SELECT_WINNER = "select_winner"
    REARM_POLL = "rearm_poll"
    RESUME_PAYOUT = "resume_payout"


class RecoveryReport(BaseModel):
    action: RecoveryAction
    round_id: Optional[int] = None
    phase: Optional[RoundPhase] = None
    elapsed_seconds: Optional[float] = None
    fulfilled: Optional[bool] = None
    oracle_stuck: bool = False
    execution: Optional[ExecutionStatus] = None
    dry_run: bool = False
    notes: List[str] = Field(default_factory=list)


class RecoverySweep:
    def __init__(
        self,
        *,
        reader: RoundSnapshotReader,
        oracle: RandomnessOracle,
        executor: PhaseTransitionExecutor,
        orchestrator: SchedulerOrchestrator,
        mirror: MirrorRepository,
        events: EventLogRepository,
        waiting_duration_seconds: float = 30,
        randomness_grace_seconds: float = 10,
        oracle_stuck_seconds: float = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.oracle = oracle
        self.executor = executor
        self.orchestrator = orchestrator
        self.mirror = mirror
        self.events = events
        self.waiting_duration_seconds = float(waiting_duration_seconds)
        self.randomness_grace_seconds = float(randomness_grace_seconds)
        self.oracle_stuck_seconds = float(oracle_stuck_seconds)
        self.clock = clock

    async def run_once(self, *, dry_run: bool = False) -> RecoveryReport:
        try:
            snapshot = await self.reader.read()
        except (LedgerError, ValueError) as exc:
            log_event("recovery_read_failed", error=str(exc), level="warning")
            return RecoveryReport(action=RecoveryAction.READ_FAILED, dry_run=dry_run, notes=[str(exc)])
        if snapshot is None:
            return RecoveryReport(action=RecoveryAction.NO_ROUND, dry_run=dry_run)

        report = await self.assess(snapshot, self.clock())
        report.dry_run = dry_run
        if report.oracle_stuck:
            await self._raise_oracle_stuck(snapshot, report, record=not dry_run)
        if dry_run or report.action == RecoveryAction.NONE:
            log_event(
                "recovery_assessed",
                round_id=snapshot.round_id,
                phase=snapshot.phase.value,
                recovery_action=report.action.value,
                elapsed=report.elapsed_seconds,
                dry_run=dry_run,
            )
            return report
        return await self._apply(snapshot, report)

    async def assess(self, snapshot: RoundSnapshot, now: float) -> RecoveryReport:
        """Decides the recovery action. Reads the oracle but never writes."""
        elapsed = now - snapshot.start_time
        report = RecoveryReport(
            action=RecoveryAction.NONE,
            round_id=snapshot.round_id,
            phase=snapshot.phase,
            elapsed_seconds=elapsed,
        )

        if snapshot.phase == RoundPhase.WAITING:
            if elapsed >= self.waiting_duration_seconds:
                report.action = RecoveryAction.CLOSE_WINDOW
                report.notes.append("close_window_overdue")
            return report

        if snapshot.phase == RoundPhase.AWAITING_RANDOMNESS:
            if elapsed < self.waiting_duration_seconds + self.randomness_grace_seconds:
                return report
            report.fulfilled = await self._check_fulfilled(snapshot)
            if report.fulfilled:
                report.action = RecoveryAction.SELECT_WINNER
                report.notes.append("randomness_fulfilled_but_round_open")
                return report
            report.action = RecoveryAction.REARM_POLL
            if elapsed >= self.waiting_duration_seconds + self.oracle_stuck_seconds:
                report.oracle_stuck = True
                report.notes.append("oracle_stuck")
            return report

        if not snapshot.round_advanced:
            report.action = RecoveryAction.RESUME_PAYOUT
            report.notes.append("round_counter_not_advanced")
        return report

    async def _apply(self, snapshot: RoundSnapshot, report: RecoveryReport) -> RecoveryReport:
        round_id = snapshot.round_id
        now = self.clock()
        if report.action == RecoveryAction.CLOSE_WINDOW:
            if await self.mirror.ensure(snapshot, now):
                log_event("recovery_mirror_created", round_id=round_id, phase=snapshot.phase.value, level="warning")
            await self._audit(snapshot, report)
            result = await self.executor.execute(Transition.CLOSE_WINDOW, round_id)
            report.execution = result.status
        elif report.action in {RecoveryAction.SELECT_WINNER, RecoveryAction.RESUME_PAYOUT}:
            await self.mirror.ensure(snapshot, now)
            await self._audit(snapshot, report)
            result = await self.executor.execute(Transition.SELECT_WINNER, round_id)
            report.execution = result.status
        elif report.action == RecoveryAction.REARM_POLL:
            # Schedules only when no poll attempt is pending.
            decision = await self.orchestrator.on_snapshot_observed(snapshot)
            report.notes.append(f"orchestrator:{decision.kind.value}")

        log_event(
            "recovery_applied",
            round_id=round_id,
            phase=snapshot.phase.value,
            recovery_action=report.action.value,
            outcome=report.execution.value if report.execution else "",
            elapsed=report.elapsed_seconds,
        )
        return report

    async def _check_fulfilled(self, snapshot: RoundSnapshot) -> bool:
        if not snapshot.randomness_handle:
            return False
        try:
            return await self.oracle.check_fulfilled(snapshot.randomness_handle)
        except OracleError as exc:
            log_event("recovery_oracle_check_failed", round_id=snapshot.round_id, error=str(exc), level="warning")
            return False

    async def _raise_oracle_stuck(self, snapshot: RoundSnapshot, report: RecoveryReport, *, record: bool) -> None:
        log_event(
            "oracle_stuck",
            round_id=snapshot.round_id,
            phase=snapshot.phase.value,
            elapsed=report.elapsed_seconds,
            randomness_handle=snapshot.randomness_handle,
            level="critical",
        )
        if not record:
            return
        await self.events.append(
            EventLogEntry(
                round_id=snapshot.round_id,
                event="oracle_stuck",
                success=False,
                transition=Transition.SELECT_WINNER.value,
                error="randomness not fulfilled long after the wager window closed",
                metadata={"elapsed_seconds": report.elapsed_seconds, "randomness_handle": snapshot.randomness_handle},
                created_at=self.clock(),
            )
        )

    async def _audit(self, snapshot: RoundSnapshot, report: RecoveryReport) -> None:
        await self.events.append(
            EventLogEntry(
                round_id=snapshot.round_id,
                event="recovery_triggered",
                metadata={
                    "action": report.action.value,
                    "phase": snapshot.phase.value,
                    "elapsed_seconds": report.elapsed_seconds,
                    "notes": list(report.notes),
                },
                created_at=self.clock(),
            )
        )
