"""Append-only dead-letter sinks. Operators read; nothing here updates or deletes."""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiosqlite

from notifier.events.models import DeadLetterEntry

logger = logging.getLogger(__name__)

__all__ = ["DeadLetterSink", "MemoryDeadLetterSink", "SqliteDeadLetterSink"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS dead_letter (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT,
    event_type      TEXT,
    subject_id      TEXT,
    handler_id      TEXT,
    reason          TEXT    NOT NULL,
    raw             BLOB    NOT NULL,
    attempts        TEXT    NOT NULL,
    topic           TEXT    NOT NULL,
    partition_no    INTEGER NOT NULL,
    msg_offset      INTEGER NOT NULL,
    created_at      REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_dl_event ON dead_letter(event_id);
"""


@runtime_checkable
class DeadLetterSink(Protocol):
    async def append(self, entry: DeadLetterEntry) -> None:
        """Store entry. Must not drop it silently."""


class MemoryDeadLetterSink:
    """In-process sink, mainly for tests."""

    def __init__(self) -> None:
        self._entries: list[DeadLetterEntry] = []

    async def append(self, entry: DeadLetterEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> tuple[DeadLetterEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class SqliteDeadLetterSink:
    """SQLite table of dead letters with full attempt history as JSON."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def append(self, entry: DeadLetterEntry) -> None:
        conn = await self._ensure_conn()
        event = entry.event
        created_at = (
            entry.dead_lettered_at.timestamp() if entry.dead_lettered_at else time.time()
        )
        await conn.execute(
            """
            INSERT INTO dead_letter (event_id, event_type, subject_id, handler_id, reason,
                raw, attempts, topic, partition_no, msg_offset, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(event.id) if event else None,
                event.type.value if event else None,
                event.subject_id if event else None,
                entry.handler_id,
                entry.reason,
                entry.raw,
                json.dumps([a.to_dict() for a in entry.attempts], ensure_ascii=False),
                entry.topic,
                entry.partition,
                entry.offset,
                created_at,
            ),
        )
        await conn.commit()

    async def fetch(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent entries first, for operator inspection."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            SELECT event_id, event_type, subject_id, handler_id, reason, raw, attempts,
                topic, partition_no, msg_offset, created_at
            FROM dead_letter
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event_id": row[0],
                "event_type": row[1],
                "subject_id": row[2],
                "handler_id": row[3],
                "reason": row[4],
                "raw": bytes(row[5]),
                "attempts": json.loads(row[6]),
                "topic": row[7],
                "partition": row[8],
                "offset": row[9],
                "dead_lettered_at": datetime.fromtimestamp(row[10], tz=timezone.utc),
            }
            for row in rows
        ]
