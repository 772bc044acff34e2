from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from roundcrank.adapters.scheduling.durable_scheduler import DurableTaskScheduler
from roundcrank.core.contracts.repositories import EventLogRepository, JobRepository
from roundcrank.domain.records import EventLogEntry
from roundcrank.logging import log_event

DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class RetentionPolicy:
    job_days: int = 7
    event_days: int = 7

    def job_cutoff(self, now: float) -> float:
        return now - self.job_days * DAY_SECONDS

    def event_cutoff(self, now: float) -> float:
        return now - self.event_days * DAY_SECONDS


async def apply_retention(
    *,
    jobs: JobRepository,
    events: EventLogRepository,
    now: float,
    policy: Optional[RetentionPolicy] = None,
    scheduler: Optional[DurableTaskScheduler] = None,
) -> Dict[str, Any]:
    """
    Deletes settled jobs and audit entries past their retention window.
    Pending jobs are never touched. Records the pass in the event log either way.
    """
    policy = policy or RetentionPolicy()
    summary: Dict[str, Any] = {
        "jobs_deleted": 0,
        "events_deleted": 0,
        "tasks_deleted": 0,
        "job_cutoff": policy.job_cutoff(now),
        "event_cutoff": policy.event_cutoff(now),
    }
    try:
        summary["jobs_deleted"] = await jobs.purge_settled_before(policy.job_cutoff(now))
        summary["events_deleted"] = await events.purge_before(policy.event_cutoff(now))
        if scheduler is not None:
            summary["tasks_deleted"] = await scheduler.purge_finished_before(policy.job_cutoff(now))
    except Exception as exc:
        summary["error"] = str(exc)
        log_event("cleanup_failed", summary, level="error")
        await events.append(
            EventLogEntry(event="cleanup_failed", success=False, error=str(exc), metadata=summary, created_at=now)
        )
        return summary

    log_event("cleanup_completed", summary)
    await events.append(EventLogEntry(event="cleanup_completed", metadata=summary, created_at=now))
    return summary
