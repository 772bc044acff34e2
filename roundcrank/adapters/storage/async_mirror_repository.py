"""
Async Repositories for the GameMirror projection and the audit EventLog.
"""
from __future__ import annotations
import aiosqlite
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from roundcrank.core.contracts.repositories import EventLogRepository, MirrorRepository
from roundcrank.domain.records import EventLogEntry, GameMirror, MirrorUpdate, RoundPhase, RoundSnapshot
from roundcrank.domain.state_machine import PhaseStateMachine


class AsyncMirrorRepository(MirrorRepository):
    """
    Async implementation of MirrorRepository using aiosqlite.
    Writes are forward-only per round id: a lower phase never overwrites a higher one.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._initialized = False
        self._lock = asyncio.Lock()

    async def _ensure_initialized(self, conn: aiosqlite.Connection):
        if self._initialized:
            return
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS game_mirror (
                round_id INTEGER PRIMARY KEY,
                phase TEXT NOT NULL,
                start_time INTEGER,
                end_time INTEGER,
                wager_count INTEGER DEFAULT 0,
                total_pot INTEGER DEFAULT 0,
                winner TEXT,
                randomness_handle TEXT,
                randomness_fulfilled INTEGER DEFAULT 0,
                last_checked REAL,
                last_updated REAL
            )
        """)
        await conn.commit()
        self._initialized = True

    @staticmethod
    def _row_to_mirror(row: aiosqlite.Row) -> GameMirror:
        data = dict(row)
        data["randomness_fulfilled"] = bool(data.get("randomness_fulfilled"))
        return GameMirror.model_validate(data)

    async def _fetch(self, conn: aiosqlite.Connection, round_id: int) -> Optional[GameMirror]:
        cursor = await conn.execute("SELECT * FROM game_mirror WHERE round_id = ?", (round_id,))
        row = await cursor.fetchone()
        return self._row_to_mirror(row) if row else None

    async def _write(self, conn: aiosqlite.Connection, mirror: GameMirror) -> None:
        await conn.execute(
            """INSERT OR REPLACE INTO game_mirror
               (round_id, phase, start_time, end_time, wager_count, total_pot, winner,
                randomness_handle, randomness_fulfilled, last_checked, last_updated)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (mirror.round_id, mirror.phase.value, mirror.start_time, mirror.end_time, mirror.wager_count,
             mirror.total_pot, mirror.winner, mirror.randomness_handle, int(mirror.randomness_fulfilled),
             mirror.last_checked, mirror.last_updated),
        )

    async def get(self, round_id: int) -> Optional[GameMirror]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                return await self._fetch(conn, round_id)

    async def get_latest(self) -> Optional[GameMirror]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute("SELECT * FROM game_mirror ORDER BY round_id DESC LIMIT 1")
                row = await cursor.fetchone()
                return self._row_to_mirror(row) if row else None

    async def upsert_snapshot(self, snapshot: RoundSnapshot, observed_at: float) -> MirrorUpdate:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                existing = await self._fetch(conn, snapshot.round_id)
                incoming = GameMirror.from_snapshot(snapshot, observed_at)

                if existing is None:
                    await self._write(conn, incoming)
                    await conn.commit()
                    return MirrorUpdate(round_id=snapshot.round_id, phase=snapshot.phase, created=True, changed=True)

                if PhaseStateMachine.is_regression(existing.phase, snapshot.phase):
                    await conn.execute(
                        "UPDATE game_mirror SET last_checked = ? WHERE round_id = ?", (observed_at, snapshot.round_id)
                    )
                    await conn.commit()
                    return MirrorUpdate(
                        round_id=snapshot.round_id,
                        previous_phase=existing.phase,
                        phase=existing.phase,
                        regression=True,
                    )

                changed = incoming.model_dump(exclude={"last_checked", "last_updated"}) != existing.model_dump(
                    exclude={"last_checked", "last_updated"}
                )
                merged = incoming.model_copy(
                    update={"last_updated": observed_at if changed else existing.last_updated}
                )
                await self._write(conn, merged)
                await conn.commit()
                return MirrorUpdate(
                    round_id=snapshot.round_id,
                    previous_phase=existing.phase,
                    phase=snapshot.phase,
                    changed=changed,
                )

    async def ensure(self, snapshot: RoundSnapshot, observed_at: float) -> bool:
        """Creates the round's record when missing. Returns True when it had to be created."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                if await self._fetch(conn, snapshot.round_id) is not None:
                    return False
                await self._write(conn, GameMirror.from_snapshot(snapshot, observed_at))
                await conn.commit()
                return True

    async def advance_phase(self, round_id: int, phase: RoundPhase, updated_at: float) -> bool:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                existing = await self._fetch(conn, round_id)
                if existing is None or PhaseStateMachine.rank(phase) <= PhaseStateMachine.rank(existing.phase):
                    return False
                PhaseStateMachine.validate_progression(existing.phase, phase)
                await conn.execute(
                    "UPDATE game_mirror SET phase = ?, last_updated = ?, last_checked = ? WHERE round_id = ?",
                    (phase.value, updated_at, updated_at, round_id),
                )
                await conn.commit()
                return True

    async def touch(self, round_id: int, checked_at: float) -> None:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                await conn.execute("UPDATE game_mirror SET last_checked = ? WHERE round_id = ?", (checked_at, round_id))
                await conn.commit()

    async def list_unfinished(self) -> List[GameMirror]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM game_mirror WHERE phase != ? ORDER BY round_id ASC", (RoundPhase.FINISHED.value,)
                )
                rows = await cursor.fetchall()
                return [self._row_to_mirror(row) for row in rows]


class AsyncEventLogRepository(EventLogRepository):
    """
    Append-only audit trail using aiosqlite.
    Never consulted for control-flow decisions.
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
            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                round_id INTEGER,
                event TEXT NOT NULL,
                success INTEGER NOT NULL DEFAULT 1,
                transition TEXT,
                tx_id TEXT,
                error TEXT,
                metadata_json TEXT,
                created_at REAL
            )
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS ix_event_log_round ON event_log (round_id)")
        await conn.execute("CREATE INDEX IF NOT EXISTS ix_event_log_created ON event_log (created_at)")
        await conn.commit()
        self._initialized = True

    async def append(self, entry: EventLogEntry) -> None:
        created_at = entry.created_at if entry.created_at is not None else self.clock()
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                await conn.execute(
                    """INSERT INTO event_log (round_id, event, success, transition, tx_id, error, metadata_json, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (entry.round_id, entry.event, int(entry.success), entry.transition, entry.tx_id, entry.error,
                     json.dumps(entry.metadata, default=str), created_at),
                )
                await conn.commit()

    async def list_for_round(self, round_id: int, limit: int = 100) -> List[EventLogEntry]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM event_log WHERE round_id = ? ORDER BY id ASC LIMIT ?", (round_id, limit)
                )
                rows = await cursor.fetchall()
                return [EventLogEntry.model_validate(self._deserialize_row(dict(row))) for row in rows]

    async def purge_before(self, cutoff: float) -> int:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute("DELETE FROM event_log WHERE created_at < ?", (cutoff,))
                await conn.commit()
                return cursor.rowcount

    def _deserialize_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row["success"] = bool(row.get("success"))
        raw = row.pop("metadata_json", None)
        try:
            row["metadata"] = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            row["metadata"] = {}
        return row
