"""SQLite-backed partitioned log. Survives process restarts; readable from several processes."""

import asyncio
import logging
import time
import zlib
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from notifier.broker.contract import BrokerMessage, SendAck, merged_stream
from notifier.events.errors import BrokerError, PublishError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS broker_log (
    topic           TEXT    NOT NULL,
    partition_no    INTEGER NOT NULL,
    msg_offset      INTEGER NOT NULL,
    partition_key   TEXT    NOT NULL,
    payload         BLOB    NOT NULL,
    created_at      REAL    NOT NULL,
    PRIMARY KEY (topic, partition_no, msg_offset)
);

CREATE TABLE IF NOT EXISTS broker_offsets (
    group_id        TEXT    NOT NULL,
    topic           TEXT    NOT NULL,
    partition_no    INTEGER NOT NULL,
    committed       INTEGER NOT NULL,
    updated_at      REAL    NOT NULL,
    PRIMARY KEY (group_id, topic, partition_no)
);
"""


class SqliteBroker:
    """Durable log on one aiosqlite connection. Local pollers wake on send; others re-query."""

    def __init__(
        self,
        db_path: Path,
        partitions: int = 4,
        busy_timeout: int = 5000,
        poll_interval: float = 0.5,
    ) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._db_path = db_path
        self._num_partitions = partitions
        self._busy_timeout = busy_timeout
        self._poll_interval = poll_interval
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._appended = asyncio.Condition()
        self._positions: dict[tuple[str, str, int], int] = {}

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=FULL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def partition_for(self, partition_key: str) -> int:
        return zlib.crc32(partition_key.encode("utf-8")) % self._num_partitions

    def partitions_for(self, topic: str) -> list[int]:
        return list(range(self._num_partitions))

    async def send(self, topic: str, partition_key: str, data: bytes) -> SendAck:
        """Append in one IMMEDIATE transaction so concurrent writers get distinct offsets."""
        partition = self.partition_for(partition_key)
        async with self._lock:
            try:
                conn = await self._ensure_conn()
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await conn.execute(
                        """
                        SELECT COALESCE(MAX(msg_offset) + 1, 0) FROM broker_log
                        WHERE topic = ? AND partition_no = ?
                        """,
                        (topic, partition),
                    )
                    row = await cursor.fetchone()
                    offset = row[0] if row else 0
                    await conn.execute(
                        """
                        INSERT INTO broker_log
                            (topic, partition_no, msg_offset, partition_key, payload, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (topic, partition, offset, partition_key, data, time.time()),
                    )
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
            except aiosqlite.Error as e:
                raise PublishError(f"sqlite write failed: {e}") from e
        async with self._appended:
            self._appended.notify_all()
        return SendAck(topic=topic, partition=partition, offset=offset)

    async def _committed_offset(self, topic: str, partition: int, group_id: str) -> int:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            SELECT committed FROM broker_offsets
            WHERE group_id = ? AND topic = ? AND partition_no = ?
            """,
            (group_id, topic, partition),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def committed(self, topic: str, partition: int, group_id: str) -> int:
        async with self._lock:
            try:
                return await self._committed_offset(topic, partition, group_id)
            except aiosqlite.Error as e:
                raise BrokerError(f"sqlite read failed: {e}") from e

    async def seek_to_committed(self, topic: str, partition: int, group_id: str) -> None:
        key = (group_id, topic, partition)
        self._positions[key] = await self.committed(topic, partition, group_id)

    async def _fetch_next(
        self, topic: str, partition: int, group_id: str
    ) -> BrokerMessage | None:
        key = (group_id, topic, partition)
        async with self._lock:
            try:
                if key not in self._positions:
                    self._positions[key] = await self._committed_offset(
                        topic, partition, group_id
                    )
                conn = await self._ensure_conn()
                cursor = await conn.execute(
                    """
                    SELECT msg_offset, partition_key, payload FROM broker_log
                    WHERE topic = ? AND partition_no = ? AND msg_offset >= ?
                    ORDER BY msg_offset
                    LIMIT 1
                    """,
                    (topic, partition, self._positions[key]),
                )
                row = await cursor.fetchone()
            except aiosqlite.Error as e:
                raise BrokerError(f"sqlite read failed: {e}") from e
        if row is None:
            return None
        offset, partition_key, payload = row
        self._positions[key] = offset + 1
        return BrokerMessage(
            data=bytes(payload),
            offset=offset,
            partition_key=partition_key,
            partition=partition,
            topic=topic,
        )

    async def poll(
        self, topic: str, partition: int, group_id: str, timeout: float
    ) -> BrokerMessage | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            message = await self._fetch_next(topic, partition, group_id)
            if message is not None:
                return message
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            async with self._appended:
                try:
                    await asyncio.wait_for(
                        self._appended.wait(),
                        timeout=min(remaining, self._poll_interval),
                    )
                except asyncio.TimeoutError:
                    pass

    async def commit(self, message: BrokerMessage, group_id: str) -> None:
        async with self._lock:
            try:
                conn = await self._ensure_conn()
                await conn.execute(
                    """
                    INSERT INTO broker_offsets (group_id, topic, partition_no, committed, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (group_id, topic, partition_no) DO UPDATE
                    SET committed = MAX(committed, excluded.committed),
                        updated_at = excluded.updated_at
                    """,
                    (group_id, message.topic, message.partition, message.offset + 1, time.time()),
                )
                await conn.commit()
            except aiosqlite.Error as e:
                raise BrokerError(f"sqlite commit failed: {e}") from e

    def subscribe(self, topics: list[str], group_id: str) -> AsyncIterator[BrokerMessage]:
        return merged_stream(self, topics, group_id)
