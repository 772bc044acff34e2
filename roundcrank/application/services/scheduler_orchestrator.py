from __future__ import annotations

import math
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from roundcrank.core.contracts.repositories import JobRepository
from roundcrank.core.contracts.scheduling import JobScheduler
from roundcrank.domain.records import JobAction, RoundPhase, RoundSnapshot
from roundcrank.logging import log_event

CLOSE_WINDOW_HANDLER = "close_window"
POLL_RANDOMNESS_HANDLER = "poll_randomness"


class DecisionKind(str, Enum):
    SCHEDULE_CLOSE_WINDOW = "schedule_close_window"
    SCHEDULE_POLL = "schedule_poll"
    FINALIZE = "finalize"
    NOOP = "noop"


class ScheduleDecision(BaseModel):
    round_id: int
    phase: RoundPhase
    kind: DecisionKind
    delay_ms: int = 0
    reason: str = ""
    job_id: Optional[str] = None


class SchedulerOrchestrator:
    """
    Sole authority on what gets scheduled for a round.

    One branch per observation, chosen by the observed phase:
      Waiting            -> CloseWindow at max(0, endTime + buffer - now)
      AwaitingRandomness -> settle CloseWindow, first PollRandomness attempt
      Finished           -> settle both jobs, nothing further
    Jobs always go through the scheduler, even with zero delay.
    """

    def __init__(
        self,
        *,
        jobs: JobRepository,
        scheduler: JobScheduler,
        close_window_buffer_seconds: float = 2.0,
        poll_initial_delay_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.jobs = jobs
        self.scheduler = scheduler
        self.close_window_buffer_seconds = float(close_window_buffer_seconds)
        self.poll_initial_delay_seconds = float(poll_initial_delay_seconds)
        self.clock = clock

    def close_window_delay_ms(self, snapshot: RoundSnapshot, now: float) -> int:
        remaining = snapshot.end_time + self.close_window_buffer_seconds - now
        return max(0, int(math.ceil(remaining * 1000)))

    async def decide(self, snapshot: RoundSnapshot) -> ScheduleDecision:
        """Pure read of the Idempotency Ledger; schedules nothing."""
        if snapshot.phase == RoundPhase.WAITING:
            if await self.jobs.is_scheduled(snapshot.round_id, JobAction.CLOSE_WINDOW):
                return self._noop(snapshot, "close_window_already_scheduled")
            return ScheduleDecision(
                round_id=snapshot.round_id,
                phase=snapshot.phase,
                kind=DecisionKind.SCHEDULE_CLOSE_WINDOW,
                delay_ms=self.close_window_delay_ms(snapshot, self.clock()),
            )
        if snapshot.phase == RoundPhase.AWAITING_RANDOMNESS:
            if await self.jobs.is_scheduled(snapshot.round_id, JobAction.POLL_RANDOMNESS):
                return self._noop(snapshot, "poll_already_scheduled")
            return ScheduleDecision(
                round_id=snapshot.round_id,
                phase=snapshot.phase,
                kind=DecisionKind.SCHEDULE_POLL,
                delay_ms=max(0, int(self.poll_initial_delay_seconds * 1000)),
            )
        return ScheduleDecision(round_id=snapshot.round_id, phase=snapshot.phase, kind=DecisionKind.FINALIZE)

    async def on_snapshot_observed(self, snapshot: RoundSnapshot, *, dry_run: bool = False) -> ScheduleDecision:
        decision = await self.decide(snapshot)
        if dry_run:
            log_event("orchestrator_dry_run", round_id=snapshot.round_id, phase=snapshot.phase.value, decision=decision.kind.value)
            return decision

        round_id = snapshot.round_id
        if decision.kind == DecisionKind.SCHEDULE_CLOSE_WINDOW:
            job_id = await self._schedule(round_id, JobAction.CLOSE_WINDOW, CLOSE_WINDOW_HANDLER, decision.delay_ms, {})
            return decision.model_copy(update={"job_id": job_id})

        if decision.kind == DecisionKind.SCHEDULE_POLL:
            # The window closed on the ledger, whichever path closed it.
            await self.jobs.mark_completed(round_id, JobAction.CLOSE_WINDOW)
            job_id = await self._schedule(
                round_id, JobAction.POLL_RANDOMNESS, POLL_RANDOMNESS_HANDLER, decision.delay_ms, {"attempt": 1}
            )
            return decision.model_copy(update={"job_id": job_id})

        if decision.kind == DecisionKind.FINALIZE:
            closed = await self.jobs.mark_completed(round_id, JobAction.CLOSE_WINDOW)
            polled = await self.jobs.mark_completed(round_id, JobAction.POLL_RANDOMNESS)
            if closed or polled:
                log_event("round_jobs_finalized", round_id=round_id, phase=snapshot.phase.value, outcome="completed")
            return decision

        log_event("orchestrator_noop", round_id=round_id, phase=snapshot.phase.value, reason=decision.reason, level="debug")
        return decision

    async def _schedule(
        self,
        round_id: int,
        action: JobAction,
        handler: str,
        delay_ms: int,
        extra: Dict[str, Any],
    ) -> str:
        job_id = str(uuid.uuid4())
        payload = {"round_id": round_id, **extra, "job_id": job_id}
        await self.scheduler.schedule_after(delay_ms, handler, payload, task_id=job_id)
        scheduled_at = self.clock() + delay_ms / 1000.0
        job = await self.jobs.record_scheduled(job_id, round_id, action, scheduled_at)
        if job.job_id != job_id:
            # Lost a race with a concurrent observation; the duplicate timer no-ops on its foreign job id.
            log_event("schedule_duplicate_absorbed", round_id=round_id, action=action.value, job_id=job_id, kept=job.job_id)
        else:
            log_event(
                f"{action.value}_scheduled",
                round_id=round_id,
                action=action.value,
                delay_ms=delay_ms,
                job_id=job_id,
                attempt=job.attempt,
            )
        return job.job_id

    @staticmethod
    def _noop(snapshot: RoundSnapshot, reason: str) -> ScheduleDecision:
        return ScheduleDecision(round_id=snapshot.round_id, phase=snapshot.phase, kind=DecisionKind.NOOP, reason=reason)
