from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from roundcrank.core.contracts.repositories import EventLogRepository, MirrorRepository
from roundcrank.domain.records import EventLogEntry
from roundcrank.domain.snapshot_reader import RoundSnapshotReader
from roundcrank.exceptions import CrankError
from roundcrank.logging import log_event

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_SEVERITY = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}


class ComponentHealth(BaseModel):
    status: str
    latency_ms: Optional[float] = None
    detail: str = ""


class HealthReport(BaseModel):
    status: str
    checked_at: float
    components: Dict[str, ComponentHealth] = Field(default_factory=dict)
    stuck_rounds: List[int] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY


class HealthMonitor:
    def __init__(
        self,
        *,
        reader: RoundSnapshotReader,
        mirror: MirrorRepository,
        events: EventLogRepository,
        stuck_round_seconds: float = 300,
        ledger_slow_seconds: float = 5.0,
        store_slow_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.mirror = mirror
        self.events = events
        self.stuck_round_seconds = float(stuck_round_seconds)
        self.ledger_slow_seconds = float(ledger_slow_seconds)
        self.store_slow_seconds = float(store_slow_seconds)
        self.clock = clock

    async def check(self) -> HealthReport:
        components = {
            "ledger": await self._check_ledger(),
            "store": await self._check_store(),
        }
        rounds, stuck = await self._check_rounds()
        components["rounds"] = rounds
        status = max((c.status for c in components.values()), key=lambda s: _SEVERITY[s])
        report = HealthReport(status=status, checked_at=self.clock(), components=components, stuck_rounds=stuck)
        log_event(
            "health_checked",
            outcome=status,
            components={name: c.status for name, c in components.items()},
            level="info" if status == HEALTHY else "warning",
        )
        return report

    async def _check_ledger(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            await self.reader.read()
        except (CrankError, ValueError) as exc:
            return ComponentHealth(status=UNHEALTHY, detail=str(exc))
        elapsed = time.perf_counter() - started
        status = DEGRADED if elapsed > self.ledger_slow_seconds else HEALTHY
        return ComponentHealth(status=status, latency_ms=round(elapsed * 1000, 2))

    async def _check_store(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            latest = await self.mirror.get_latest()
            if latest is not None:
                await self.mirror.touch(latest.round_id, latest.last_checked or self.clock())
        except Exception as exc:
            # Any driver error means the store is unusable for this pass.
            return ComponentHealth(status=UNHEALTHY, detail=str(exc))
        elapsed = time.perf_counter() - started
        status = DEGRADED if elapsed > self.store_slow_seconds else HEALTHY
        return ComponentHealth(status=status, latency_ms=round(elapsed * 1000, 2))

    async def _check_rounds(self) -> tuple[ComponentHealth, List[int]]:
        now = self.clock()
        try:
            unfinished = await self.mirror.list_unfinished()
        except Exception as exc:
            return ComponentHealth(status=UNHEALTHY, detail=str(exc)), []
        stuck: List[int] = []
        for record in unfinished:
            last = record.last_updated or record.last_checked
            if last is None or now - last <= self.stuck_round_seconds:
                continue
            stuck.append(record.round_id)
            await self.events.append(
                EventLogEntry(
                    round_id=record.round_id,
                    event="round_stuck_detected",
                    success=False,
                    metadata={"phase": record.phase.value, "stuck_seconds": round(now - last, 1)},
                    created_at=now,
                )
            )
            log_event("round_stuck_detected", round_id=record.round_id, phase=record.phase.value, level="warning")
        if stuck:
            return ComponentHealth(status=DEGRADED, detail=f"{len(stuck)} round(s) without progress"), stuck
        return ComponentHealth(status=HEALTHY), stuck
