"""
Durable Task Scheduler.

Backs the `schedule_after` primitive with an aiosqlite table so queued tasks survive
process restarts. A tick claims due tasks by flipping `queued -> running` with a guarded
UPDATE; only the caller whose UPDATE touched the row runs the handler.
"""
from __future__ import annotations
import aiosqlite
import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from roundcrank.core.contracts.scheduling import JobScheduler
from roundcrank.logging import log_event

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

QUEUED = "queued"
RUNNING = "running"
DONE = "done"
FAILED = "failed"


class DurableTaskScheduler(JobScheduler):
    def __init__(self, db_path: str | Path, *, clock: Callable[[], float] = time.time):
        self.db_path = str(db_path)
        self.clock = clock
        self._handlers: Dict[str, TaskHandler] = {}
        self._initialized = False
        self._lock = asyncio.Lock()

    async def _ensure_initialized(self, conn: aiosqlite.Connection):
        if self._initialized:
            return
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                handler TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                run_at REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                error TEXT,
                created_at REAL,
                started_at REAL,
                finished_at REAL
            )
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS ix_scheduled_tasks_due ON scheduled_tasks (status, run_at)")
        await conn.commit()
        self._initialized = True

    def register(self, name: str, handler: TaskHandler) -> None:
        self._handlers[str(name)] = handler

    async def schedule_after(
        self, delay_ms: int, handler: str, payload: Dict[str, Any], *, task_id: Optional[str] = None
    ) -> str:
        task_id = task_id or str(uuid.uuid4())
        now = self.clock()
        run_at = now + max(0, int(delay_ms)) / 1000.0
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                await conn.execute(
                    """INSERT INTO scheduled_tasks (id, handler, payload_json, run_at, status, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (task_id, handler, json.dumps(payload, default=str), run_at, QUEUED, now),
                )
                await conn.commit()
        log_event(
            "task_enqueued",
            {**payload, "task_id": task_id, "handler": handler, "delay_ms": int(delay_ms), "run_at": run_at},
        )
        return task_id

    async def _claim_due(self) -> List[Dict[str, Any]]:
        now = self.clock()
        claimed: List[Dict[str, Any]] = []
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM scheduled_tasks WHERE status = ? AND run_at <= ? ORDER BY run_at ASC, created_at ASC",
                    (QUEUED, now),
                )
                rows = await cursor.fetchall()
                for row in rows:
                    update = await conn.execute(
                        "UPDATE scheduled_tasks SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                        (RUNNING, now, row["id"], QUEUED),
                    )
                    if update.rowcount == 1:
                        claimed.append(dict(row))
                await conn.commit()
        return claimed

    async def _finish(self, task_id: str, status: str, error: Optional[str] = None) -> None:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                await conn.execute(
                    "UPDATE scheduled_tasks SET status = ?, error = ?, finished_at = ? WHERE id = ?",
                    (status, error, self.clock(), task_id),
                )
                await conn.commit()

    async def _run_task(self, task: Dict[str, Any]) -> None:
        task_id = task["id"]
        name = task["handler"]
        handler = self._handlers.get(name)
        if handler is None:
            log_event("task_handler_missing", task_id=task_id, handler=name, level="error")
            await self._finish(task_id, FAILED, f"no handler registered for '{name}'")
            return
        try:
            payload = json.loads(task["payload_json"] or "{}")
            await handler(payload)
        except Exception as exc:
            # One task must not take the tick loop down with it.
            log_event("task_failed", task_id=task_id, handler=name, error=str(exc), level="error")
            await self._finish(task_id, FAILED, str(exc))
            return
        await self._finish(task_id, DONE)

    async def run_due(self) -> int:
        """Runs every task whose time has come. Returns how many were claimed."""
        tasks = await self._claim_due()
        if tasks:
            await asyncio.gather(*(self._run_task(task) for task in tasks))
        return len(tasks)

    async def recover_interrupted(self) -> int:
        """Re-queues tasks left `running` by a process that died mid-handler."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "UPDATE scheduled_tasks SET status = ?, started_at = NULL WHERE status = ?", (QUEUED, RUNNING)
                )
                await conn.commit()
                count = cursor.rowcount
        if count:
            log_event("tasks_requeued_after_restart", count=count, level="warning")
        return count

    async def list_tasks(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                if status:
                    cursor = await conn.execute(
                        "SELECT * FROM scheduled_tasks WHERE status = ? ORDER BY run_at ASC", (status,)
                    )
                else:
                    cursor = await conn.execute("SELECT * FROM scheduled_tasks ORDER BY run_at ASC")
                rows = await cursor.fetchall()
        tasks = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json") or "{}")
            tasks.append(item)
        return tasks

    async def purge_finished_before(self, cutoff: float) -> int:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "DELETE FROM scheduled_tasks WHERE status IN (?, ?) AND created_at < ?", (DONE, FAILED, cutoff)
                )
                await conn.commit()
                return cursor.rowcount

    async def _dispatch_due(self, in_flight: Set[asyncio.Task]) -> int:
        tasks = await self._claim_due()
        for task in tasks:
            runner = asyncio.create_task(self._run_task(task))
            in_flight.add(runner)
            runner.add_done_callback(in_flight.discard)
        return len(tasks)

    async def run(self, stop_event: asyncio.Event, *, tick_seconds: float = 0.25) -> None:
        """Claims on every tick without waiting for handlers still in flight."""
        await self.recover_interrupted()
        in_flight: Set[asyncio.Task] = set()
        while not stop_event.is_set():
            await self._dispatch_due(in_flight)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=tick_seconds)
            except (TimeoutError, asyncio.TimeoutError):
                continue
        if in_flight:
            await asyncio.gather(*in_flight)
