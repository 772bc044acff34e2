from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from roundcrank.core.contracts.ledger import RandomnessOracle
from roundcrank.core.contracts.repositories import EventLogRepository, JobRepository
from roundcrank.core.contracts.scheduling import JobScheduler
from roundcrank.domain.records import EventLogEntry, JobAction, RoundPhase, Transition
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.exceptions import LedgerError, OracleError
from roundcrank.logging import log_event
from roundcrank.application.services.scheduler_orchestrator import POLL_RANDOMNESS_HANDLER
from roundcrank.application.services.transition_executor import PhaseTransitionExecutor


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    EXHAUSTED = "exhausted"
    NOOP = "noop"


class PollResult(BaseModel):
    round_id: int
    attempt: int
    outcome: PollOutcome
    fulfilled: bool = False
    next_job_id: Optional[str] = None
    reason: str = ""


class RandomnessPollLoop:
    """
    Bounded, self-rescheduling oracle check for one round.
    Fixed interval between attempts; after `max_attempts` the job is Failed and the
    Recovery Sweep owns the round.
    """

    def __init__(
        self,
        *,
        reader: RoundSnapshotReader,
        oracle: RandomnessOracle,
        executor: PhaseTransitionExecutor,
        jobs: JobRepository,
        events: EventLogRepository,
        scheduler: JobScheduler,
        max_attempts: int = 10,
        interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.oracle = oracle
        self.executor = executor
        self.jobs = jobs
        self.events = events
        self.scheduler = scheduler
        self.max_attempts = max(1, int(max_attempts))
        self.interval_seconds = float(interval_seconds)
        self.clock = clock

    async def poll_attempt(self, round_id: int, attempt: int, job_id: Optional[str] = None) -> PollResult:
        """`job_id` is the id stamped on the timer; hand-driven calls leave it unset."""
        attempt = max(1, int(attempt))
        pending = await self.jobs.get_pending(round_id, JobAction.POLL_RANDOMNESS)
        if pending is not None and (pending.attempt > attempt or (job_id is not None and pending.job_id != job_id)):
            log_event(
                "poll_superseded",
                round_id=round_id,
                attempt=attempt,
                job_id=job_id,
                current_attempt=pending.attempt,
                current_job_id=pending.job_id,
            )
            return PollResult(round_id=round_id, attempt=attempt, outcome=PollOutcome.NOOP, reason="superseded")

        try:
            snapshot = await self.reader.read()
        except (LedgerError, ValueError) as exc:
            log_event("poll_read_failed", round_id=round_id, attempt=attempt, error=str(exc), level="warning")
            return await self._retry_or_fail(round_id, attempt, reason="ledger_read_failed")

        if snapshot is None or snapshot.round_id < round_id:
            log_event("poll_round_missing", round_id=round_id, attempt=attempt, level="warning")
            return PollResult(round_id=round_id, attempt=attempt, outcome=PollOutcome.NOOP, reason="round_missing")

        if snapshot.round_id > round_id or snapshot.phase == RoundPhase.FINISHED:
            await self.jobs.mark_completed(round_id, JobAction.POLL_RANDOMNESS)
            log_event("poll_round_already_finished", round_id=round_id, attempt=attempt, outcome="completed")
            return PollResult(round_id=round_id, attempt=attempt, outcome=PollOutcome.COMPLETED, reason="finished")

        if snapshot.phase != RoundPhase.AWAITING_RANDOMNESS:
            log_event(
                "poll_unexpected_phase",
                round_id=round_id,
                attempt=attempt,
                phase=snapshot.phase.value,
                level="warning",
            )
            return PollResult(round_id=round_id, attempt=attempt, outcome=PollOutcome.NOOP, reason="unexpected_phase")

        fulfilled = await self._check_fulfilled(round_id, attempt, snapshot.randomness_handle)
        if fulfilled:
            result = await self.executor.execute(
                Transition.SELECT_WINNER,
                round_id,
                settle_failures=attempt >= self.max_attempts,
            )
            if result.succeeded:
                return PollResult(round_id=round_id, attempt=attempt, outcome=PollOutcome.COMPLETED, fulfilled=True)
            log_event(
                "poll_select_winner_failed",
                round_id=round_id,
                attempt=attempt,
                error=result.error,
                level="warning",
            )

        return await self._retry_or_fail(
            round_id, attempt, fulfilled=fulfilled, reason="select_winner_failed" if fulfilled else "not_fulfilled"
        )

    async def _check_fulfilled(self, round_id: int, attempt: int, handle: Optional[str]) -> bool:
        if not handle:
            log_event("poll_missing_randomness_handle", round_id=round_id, attempt=attempt, level="warning")
            return False
        try:
            fulfilled = await self.oracle.check_fulfilled(handle)
        except OracleError as exc:
            log_event("oracle_check_failed", round_id=round_id, attempt=attempt, error=str(exc), level="warning")
            return False
        log_event("oracle_checked", round_id=round_id, attempt=attempt, fulfilled=fulfilled)
        return fulfilled

    async def _retry_or_fail(self, round_id: int, attempt: int, *, fulfilled: bool = False, reason: str) -> PollResult:
        if attempt < self.max_attempts:
            next_attempt = attempt + 1
            delay_ms = int(self.interval_seconds * 1000)
            job_id = str(uuid.uuid4())
            await self.scheduler.schedule_after(
                delay_ms,
                POLL_RANDOMNESS_HANDLER,
                {"round_id": round_id, "attempt": next_attempt, "job_id": job_id},
                task_id=job_id,
            )
            scheduled_at = self.clock() + delay_ms / 1000.0
            updated = await self.jobs.update_attempt(
                round_id, JobAction.POLL_RANDOMNESS, job_id=job_id, attempt=next_attempt, scheduled_at=scheduled_at
            )
            if updated is None:
                # Invoked without a pending entry (e.g. re-entered by hand); start one.
                await self.jobs.record_scheduled(job_id, round_id, JobAction.POLL_RANDOMNESS, scheduled_at)
                await self.jobs.update_attempt(
                    round_id, JobAction.POLL_RANDOMNESS, job_id=job_id, attempt=next_attempt, scheduled_at=scheduled_at
                )
            log_event(
                "poll_rescheduled",
                round_id=round_id,
                attempt=next_attempt,
                delay_ms=delay_ms,
                job_id=job_id,
                reason=reason,
            )
            return PollResult(
                round_id=round_id,
                attempt=attempt,
                outcome=PollOutcome.RESCHEDULED,
                fulfilled=fulfilled,
                next_job_id=job_id,
                reason=reason,
            )

        error = f"randomness poll exhausted after {attempt} attempts ({reason})"
        await self.jobs.mark_failed(round_id, JobAction.POLL_RANDOMNESS, error)
        await self.events.append(
            EventLogEntry(
                round_id=round_id,
                event="timeout",
                success=False,
                transition=Transition.SELECT_WINNER.value,
                error=error,
                metadata={"attempt": attempt, "max_attempts": self.max_attempts, "reason": reason},
                created_at=self.clock(),
            )
        )
        log_event(
            "poll_exhausted",
            round_id=round_id,
            attempt=attempt,
            action=JobAction.POLL_RANDOMNESS.value,
            outcome="failed",
            error=error,
            level="error",
        )
        return PollResult(
            round_id=round_id, attempt=attempt, outcome=PollOutcome.EXHAUSTED, fulfilled=fulfilled, reason=reason
        )
