from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from roundcrank.core.contracts.ledger import LedgerClient
from roundcrank.core.contracts.repositories import EventLogRepository, JobRepository, MirrorRepository
from roundcrank.domain.records import EventLogEntry, RoundSnapshot, Transition
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.domain.state_machine import PhaseStateMachine
from roundcrank.exceptions import LedgerError, LedgerTimeoutError
from roundcrank.logging import log_event


class ExecutionStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    DRY_RUN = "dry_run"


class ExecutionResult(BaseModel):
    transition: Transition
    round_id: int
    status: ExecutionStatus
    tx_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in {ExecutionStatus.APPLIED, ExecutionStatus.ALREADY_APPLIED}


class PhaseTransitionExecutor:
    """
    Issues one ledger transition for one round and settles its bookkeeping.

    The current phase is re-read right before sending, so a stale or duplicate trigger
    degrades to ALREADY_APPLIED/SKIPPED. Expected ledger failures come back as a
    FAILED result instead of an exception.
    """

    def __init__(
        self,
        *,
        reader: RoundSnapshotReader,
        ledger: LedgerClient,
        jobs: JobRepository,
        mirror: MirrorRepository,
        events: EventLogRepository,
        confirm_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.ledger = ledger
        self.jobs = jobs
        self.mirror = mirror
        self.events = events
        self.confirm_timeout_seconds = float(confirm_timeout_seconds)
        self.clock = clock

    async def execute(
        self,
        transition: Transition,
        round_id: int,
        *,
        settle_failures: bool = True,
        dry_run: bool = False,
    ) -> ExecutionResult:
        """
        `settle_failures=False` leaves the ScheduledJob pending on failure so a caller
        with its own retry bound (the poll loop) decides when it is Failed.
        """
        action = transition.job_action
        try:
            snapshot = await self.reader.read()
        except (LedgerError, ValueError) as exc:
            log_event(
                "transition_read_failed",
                round_id=round_id,
                transition=transition.value,
                error=str(exc),
                level="warning",
            )
            return self._result(transition, round_id, ExecutionStatus.FAILED, error=str(exc))

        if snapshot is None or snapshot.round_id < round_id:
            log_event("transition_round_missing", round_id=round_id, transition=transition.value, level="warning")
            return self._result(transition, round_id, ExecutionStatus.NOT_FOUND)

        if snapshot.round_id > round_id or PhaseStateMachine.is_applied(transition, snapshot):
            await self.jobs.mark_completed(round_id, action)
            log_event(
                "transition_already_applied",
                round_id=round_id,
                transition=transition.value,
                phase=snapshot.phase.value,
                outcome=ExecutionStatus.ALREADY_APPLIED.value,
            )
            return self._result(transition, round_id, ExecutionStatus.ALREADY_APPLIED)

        if not PhaseStateMachine.precondition_holds(transition, snapshot, self.clock()):
            log_event(
                "transition_precondition_unmet",
                round_id=round_id,
                transition=transition.value,
                phase=snapshot.phase.value,
                outcome=ExecutionStatus.SKIPPED.value,
            )
            return self._result(transition, round_id, ExecutionStatus.SKIPPED)

        if dry_run:
            log_event("transition_dry_run", round_id=round_id, transition=transition.value, phase=snapshot.phase.value)
            return self._result(transition, round_id, ExecutionStatus.DRY_RUN)

        try:
            tx_id = await self._send(transition, snapshot)
        except LedgerError as exc:
            return await self._handle_failure(transition, round_id, None, str(exc), settle_failures)

        await self._audit(round_id, "transaction_sent", transition, tx_id=tx_id)
        log_event("transaction_sent", round_id=round_id, transition=transition.value, tx_id=tx_id)

        try:
            confirmed = await asyncio.wait_for(
                self.ledger.confirm(tx_id, timeout_seconds=self.confirm_timeout_seconds),
                timeout=self.confirm_timeout_seconds,
            )
        except (LedgerTimeoutError, asyncio.TimeoutError):
            return await self._handle_failure(
                transition, round_id, tx_id, f"confirmation timed out after {self.confirm_timeout_seconds}s", settle_failures
            )
        except LedgerError as exc:
            return await self._handle_failure(transition, round_id, tx_id, str(exc), settle_failures)

        if not confirmed:
            return await self._handle_failure(transition, round_id, tx_id, "transaction failed on ledger", settle_failures)

        await self._audit(round_id, "transaction_confirmed", transition, tx_id=tx_id)
        await self._refresh_mirror(round_id)
        # The post-confirm read may lag the ledger; the confirmed phase is known regardless.
        await self.mirror.advance_phase(round_id, PhaseStateMachine.next_phase(transition), self.clock())
        await self.jobs.mark_completed(round_id, action)
        log_event(
            "transition_applied",
            round_id=round_id,
            transition=transition.value,
            tx_id=tx_id,
            outcome=ExecutionStatus.APPLIED.value,
        )
        return self._result(transition, round_id, ExecutionStatus.APPLIED, tx_id=tx_id)

    async def _send(self, transition: Transition, snapshot: RoundSnapshot) -> str:
        if transition == Transition.CLOSE_WINDOW:
            return await self.ledger.close_window()
        return await self.ledger.select_winner_and_payout(snapshot.randomness_handle)

    async def _handle_failure(
        self,
        transition: Transition,
        round_id: int,
        tx_id: Optional[str],
        error: str,
        settle_failures: bool,
    ) -> ExecutionResult:
        # A concurrent path may have landed the same transition while ours failed.
        try:
            snapshot = await self.reader.read()
        except (LedgerError, ValueError):
            snapshot = None
        if snapshot is not None and (
            snapshot.round_id > round_id
            or (snapshot.round_id == round_id and PhaseStateMachine.is_applied(transition, snapshot))
        ):
            await self._refresh_mirror(round_id, snapshot)
            await self.jobs.mark_completed(round_id, transition.job_action)
            log_event(
                "transition_race_absorbed",
                round_id=round_id,
                transition=transition.value,
                tx_id=tx_id,
                error=error,
                outcome=ExecutionStatus.ALREADY_APPLIED.value,
            )
            return self._result(transition, round_id, ExecutionStatus.ALREADY_APPLIED, tx_id=tx_id)

        await self._audit(round_id, "transaction_failed", transition, tx_id=tx_id, error=error, success=False)
        if settle_failures:
            await self.jobs.mark_failed(round_id, transition.job_action, error)
        log_event(
            "transition_failed",
            round_id=round_id,
            transition=transition.value,
            tx_id=tx_id,
            error=error,
            settled=settle_failures,
            outcome=ExecutionStatus.FAILED.value,
            level="error",
        )
        return self._result(transition, round_id, ExecutionStatus.FAILED, tx_id=tx_id, error=error)

    async def _refresh_mirror(self, round_id: int, snapshot: Optional[RoundSnapshot] = None) -> None:
        if snapshot is None:
            try:
                snapshot = await self.reader.read()
            except (LedgerError, ValueError) as exc:
                log_event("mirror_refresh_failed", round_id=round_id, error=str(exc), level="warning")
                return
        if snapshot is None or snapshot.round_id != round_id:
            return
        await self.mirror.upsert_snapshot(snapshot, self.clock())

    async def _audit(
        self,
        round_id: int,
        event: str,
        transition: Transition,
        *,
        tx_id: Optional[str] = None,
        error: Optional[str] = None,
        success: bool = True,
    ) -> None:
        await self.events.append(
            EventLogEntry(
                round_id=round_id,
                event=event,
                success=success,
                transition=transition.value,
                tx_id=tx_id,
                error=error,
                created_at=self.clock(),
            )
        )

    @staticmethod
    def _result(
        transition: Transition,
        round_id: int,
        status: ExecutionStatus,
        *,
        tx_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(transition=transition, round_id=round_id, status=status, tx_id=tx_id, error=error)
