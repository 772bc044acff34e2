"""
Async Job Repository - the Idempotency Ledger.

Single authority on "did we already schedule this". At most one pending row per
(round_id, action): lookup-then-insert under the repository lock, backed by a partial
unique index so a cross-process race degrades to returning the existing row.
"""
from __future__ import annotations
import aiosqlite
import asyncio
import time
from pathlib import Path
from typing import Callable, List, Optional

from roundcrank.core.contracts.repositories import JobRepository
from roundcrank.domain.records import JobAction, JobStatus, ScheduledJob


class AsyncJobRepository(JobRepository):
    """
    Async implementation of JobRepository using aiosqlite.
    Every operation is safe to call redundantly.
    """

    def __init__(self, db_path: str | Path, *, clock: Callable[[], float] = time.time):
        self.db_path = str(db_path)
        self.clock = clock
        self._initialized = False
        self._lock = asyncio.Lock()

    async def _ensure_initialized(self, conn: aiosqlite.Connection):
        if self._initialized:
            return
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                round_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                scheduled_at REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempt INTEGER NOT NULL DEFAULT 1,
                error TEXT,
                created_at REAL,
                completed_at REAL
            )
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_scheduled_jobs_pending
            ON scheduled_jobs (round_id, action) WHERE status = 'pending'
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_scheduled_jobs_round ON scheduled_jobs (round_id, status)"
        )
        await conn.commit()
        self._initialized = True

    async def _fetch_pending(self, conn: aiosqlite.Connection, round_id: int, action: JobAction) -> Optional[ScheduledJob]:
        cursor = await conn.execute(
            "SELECT * FROM scheduled_jobs WHERE round_id = ? AND action = ? AND status = ? ORDER BY id DESC LIMIT 1",
            (round_id, action.value, JobStatus.PENDING.value),
        )
        row = await cursor.fetchone()
        return ScheduledJob.model_validate(dict(row)) if row else None

    async def is_scheduled(self, round_id: int, action: JobAction) -> bool:
        return await self.get_pending(round_id, action) is not None

    async def get_pending(self, round_id: int, action: JobAction) -> Optional[ScheduledJob]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                return await self._fetch_pending(conn, round_id, action)

    async def record_scheduled(self, job_id: str, round_id: int, action: JobAction, scheduled_at: float) -> ScheduledJob:
        """Returns the existing pending entry instead of inserting a second one."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                existing = await self._fetch_pending(conn, round_id, action)
                if existing is not None:
                    return existing
                try:
                    await conn.execute(
                        """INSERT INTO scheduled_jobs (job_id, round_id, action, scheduled_at, status, attempt, created_at)
                           VALUES (?, ?, ?, ?, ?, 1, ?)""",
                        (job_id, round_id, action.value, scheduled_at, JobStatus.PENDING.value, self.clock()),
                    )
                    await conn.commit()
                except aiosqlite.IntegrityError:
                    # Another process won the insert; its row is the reference.
                    await conn.rollback()
                created = await self._fetch_pending(conn, round_id, action)
                return created

    async def update_attempt(self, round_id: int, action: JobAction, *, job_id: str, attempt: int, scheduled_at: float) -> Optional[ScheduledJob]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                await conn.execute(
                    """UPDATE scheduled_jobs SET job_id = ?, attempt = ?, scheduled_at = ?
                       WHERE round_id = ? AND action = ? AND status = ?""",
                    (job_id, attempt, scheduled_at, round_id, action.value, JobStatus.PENDING.value),
                )
                await conn.commit()
                return await self._fetch_pending(conn, round_id, action)

    async def _settle(self, round_id: int, action: JobAction, status: JobStatus, error: Optional[str]) -> bool:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    """UPDATE scheduled_jobs SET status = ?, error = ?, completed_at = ?
                       WHERE round_id = ? AND action = ? AND status = ?""",
                    (status.value, error, self.clock(), round_id, action.value, JobStatus.PENDING.value),
                )
                await conn.commit()
                return cursor.rowcount > 0

    async def mark_completed(self, round_id: int, action: JobAction) -> bool:
        return await self._settle(round_id, action, JobStatus.COMPLETED, None)

    async def mark_failed(self, round_id: int, action: JobAction, reason: str) -> bool:
        return await self._settle(round_id, action, JobStatus.FAILED, reason)

    async def list_for_round(self, round_id: int) -> List[ScheduledJob]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM scheduled_jobs WHERE round_id = ? ORDER BY id ASC", (round_id,)
                )
                rows = await cursor.fetchall()
                return [ScheduledJob.model_validate(dict(row)) for row in rows]

    async def purge_settled_before(self, cutoff: float) -> int:
        """Retention: drops completed/failed rows created before `cutoff`. Pending rows stay."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "DELETE FROM scheduled_jobs WHERE status != ? AND created_at < ?",
                    (JobStatus.PENDING.value, cutoff),
                )
                await conn.commit()
                return cursor.rowcount
