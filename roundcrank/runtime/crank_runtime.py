from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from roundcrank.adapters.ledger.http_ledger_client import HttpLedgerClient
from roundcrank.adapters.scheduling.durable_scheduler import DurableTaskScheduler
from roundcrank.adapters.storage.async_job_repository import AsyncJobRepository
from roundcrank.adapters.storage.async_mirror_repository import AsyncEventLogRepository, AsyncMirrorRepository
from roundcrank.application.services.health_monitor import HealthMonitor
from roundcrank.application.services.randomness_poller import RandomnessPollLoop
from roundcrank.application.services.recovery_sweep import RecoverySweep
from roundcrank.application.services.scheduler_orchestrator import (
    CLOSE_WINDOW_HANDLER,
    POLL_RANDOMNESS_HANDLER,
    SchedulerOrchestrator,
)
from roundcrank.application.services.snapshot_observer import SnapshotObserver
from roundcrank.application.services.transition_executor import ExecutionStatus, PhaseTransitionExecutor
from roundcrank.core.contracts.ledger import LedgerClient, RandomnessOracle
from roundcrank.domain.records import Transition
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.exceptions import ConfigurationError
from roundcrank.logging import log_event
from roundcrank.runtime.retention_policy import RetentionPolicy, apply_retention
from roundcrank.settings import CrankConfig


class CrankRuntime:
    """
    Composition root: builds every component from one CrankConfig, registers the
    durable job handlers and drives the periodic triggers.
    """

    def __init__(
        self,
        config: CrankConfig,
        *,
        ledger: LedgerClient,
        oracle: RandomnessOracle,
        clock: Callable[[], float] = time.time,
        require_credentials: bool = True,
    ):
        self.config = config
        self.clock = clock
        self.require_credentials = require_credentials
        self.ledger = ledger
        self.oracle = oracle

        Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.jobs = AsyncJobRepository(config.db_path, clock=clock)
        self.mirror = AsyncMirrorRepository(config.db_path)
        self.events = AsyncEventLogRepository(config.db_path, clock=clock)
        self.scheduler = DurableTaskScheduler(config.db_path, clock=clock)
        self.reader = RoundSnapshotReader(ledger)

        self.executor = PhaseTransitionExecutor(
            reader=self.reader,
            ledger=ledger,
            jobs=self.jobs,
            mirror=self.mirror,
            events=self.events,
            confirm_timeout_seconds=config.confirm_timeout_seconds,
            clock=clock,
        )
        self.orchestrator = SchedulerOrchestrator(
            jobs=self.jobs,
            scheduler=self.scheduler,
            close_window_buffer_seconds=config.close_window_buffer_seconds,
            poll_initial_delay_seconds=config.poll_initial_delay_seconds,
            clock=clock,
        )
        self.poller = RandomnessPollLoop(
            reader=self.reader,
            oracle=oracle,
            executor=self.executor,
            jobs=self.jobs,
            events=self.events,
            scheduler=self.scheduler,
            max_attempts=config.max_poll_attempts,
            interval_seconds=config.poll_interval_seconds,
            clock=clock,
        )
        self.recovery = RecoverySweep(
            reader=self.reader,
            oracle=oracle,
            executor=self.executor,
            orchestrator=self.orchestrator,
            mirror=self.mirror,
            events=self.events,
            waiting_duration_seconds=config.waiting_duration_seconds,
            randomness_grace_seconds=config.randomness_grace_seconds,
            oracle_stuck_seconds=config.oracle_stuck_seconds,
            clock=clock,
        )
        self.observer = SnapshotObserver(
            reader=self.reader,
            mirror=self.mirror,
            events=self.events,
            orchestrator=self.orchestrator,
            clock=clock,
        )
        self.health = HealthMonitor(
            reader=self.reader,
            mirror=self.mirror,
            events=self.events,
            stuck_round_seconds=config.stuck_round_seconds,
            clock=clock,
        )
        self.retention = RetentionPolicy(job_days=config.job_retention_days, event_days=config.event_retention_days)

        self.scheduler.register(CLOSE_WINDOW_HANDLER, self.handle_close_window)
        self.scheduler.register(POLL_RANDOMNESS_HANDLER, self.handle_poll_randomness)

    @classmethod
    def from_config(cls, config: CrankConfig, *, clock: Callable[[], float] = time.time) -> "CrankRuntime":
        config.require_credentials()
        client = HttpLedgerClient.from_config(config)
        return cls(config, ledger=client, oracle=client, clock=clock)

    # --- durable job handlers -------------------------------------------

    def _check_credentials(self, handler: str, payload: Dict[str, Any]) -> bool:
        if not self.require_credentials:
            return True
        try:
            self.config.require_credentials()
        except ConfigurationError as exc:
            log_event("job_configuration_error", payload, handler=handler, error=str(exc), level="critical")
            return False
        return True

    async def handle_close_window(self, payload: Dict[str, Any]) -> None:
        if not self._check_credentials(CLOSE_WINDOW_HANDLER, payload):
            return
        try:
            round_id = int(payload["round_id"])
            result = await self.executor.execute(Transition.CLOSE_WINDOW, round_id, dry_run=self.config.dry_run)
            if result.status == ExecutionStatus.APPLIED:
                # Let the orchestrator arm the poll loop now instead of at the next observation tick.
                await self.observer.observe()
        except Exception as exc:
            log_event("job_handler_failed", payload, handler=CLOSE_WINDOW_HANDLER, error=str(exc), level="error")

    async def handle_poll_randomness(self, payload: Dict[str, Any]) -> None:
        if not self._check_credentials(POLL_RANDOMNESS_HANDLER, payload):
            return
        try:
            await self.poller.poll_attempt(
                int(payload["round_id"]), int(payload.get("attempt") or 1), job_id=payload.get("job_id")
            )
        except Exception as exc:
            log_event("job_handler_failed", payload, handler=POLL_RANDOMNESS_HANDLER, error=str(exc), level="error")

    # --- one-shot passes ------------------------------------------------

    async def observe_once(self, *, dry_run: bool = False):
        return await self.observer.observe(dry_run=dry_run or self.config.dry_run)

    async def recover_once(self, *, dry_run: bool = False):
        return await self.recovery.run_once(dry_run=dry_run or self.config.dry_run)

    async def cleanup_once(self) -> Dict[str, Any]:
        return await apply_retention(
            jobs=self.jobs,
            events=self.events,
            now=self.clock(),
            policy=self.retention,
            scheduler=self.scheduler,
        )

    async def status(self) -> Dict[str, Any]:
        latest = await self.mirror.get_latest()
        if latest is None:
            return {"round": None, "jobs": []}
        jobs = await self.jobs.list_for_round(latest.round_id)
        return {
            "round": latest.public_view(),
            "jobs": [job.model_dump(mode="json") for job in jobs],
        }

    # --- long-running loop ----------------------------------------------

    async def _periodic(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Awaitable[Any]],
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            try:
                await action()
            except Exception as exc:
                log_event("periodic_task_failed", task=name, error=str(exc), level="error")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except (TimeoutError, asyncio.TimeoutError):
                continue

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        log_event("crank_started", db_path=self.config.db_path, dry_run=self.config.dry_run)
        await asyncio.gather(
            self.scheduler.run(stop_event, tick_seconds=self.config.scheduler_tick_seconds),
            self._periodic("observe", self.config.observe_interval_seconds, self.observe_once, stop_event),
            self._periodic("recovery", self.config.recovery_interval_seconds, self.recover_once, stop_event),
            self._periodic("retention", self.config.retention_interval_seconds, self.cleanup_once, stop_event),
        )
        log_event("crank_stopped")
