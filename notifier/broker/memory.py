"""In-process partitioned log. Used by tests and single-process deployments."""

import asyncio
import logging
import zlib
from typing import AsyncIterator

from notifier.broker.contract import BrokerMessage, SendAck, merged_stream
from notifier.events.errors import BrokerError, PublishError

logger = logging.getLogger(__name__)

_Key = tuple[str, str, int]  # (group_id, topic, partition)


class InMemoryBroker:
    """Partitioned log with per-group positions and commits.

    Fault injection: disconnect()/reconnect() make every call raise BrokerError,
    fail_sends(n) makes the next n sends raise PublishError, seek() rewinds a
    group to force redelivery.
    """

    def __init__(self, partitions: int = 4) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._num_partitions = partitions
        self._logs: dict[str, list[list[tuple[str, bytes]]]] = {}
        self._positions: dict[_Key, int] = {}
        self._committed: dict[_Key, int] = {}
        self._connected = True
        self._send_failures: list[PublishError] = []
        self._appended = asyncio.Condition()

    def _log(self, topic: str) -> list[list[tuple[str, bytes]]]:
        if topic not in self._logs:
            self._logs[topic] = [[] for _ in range(self._num_partitions)]
        return self._logs[topic]

    def _check_connected(self) -> None:
        if not self._connected:
            raise BrokerError("in-memory broker disconnected")

    def partition_for(self, partition_key: str) -> int:
        return zlib.crc32(partition_key.encode("utf-8")) % self._num_partitions

    def partitions_for(self, topic: str) -> list[int]:
        return list(range(len(self._log(topic))))

    async def send(self, topic: str, partition_key: str, data: bytes) -> SendAck:
        self._check_connected()
        if self._send_failures:
            raise self._send_failures.pop(0)
        partition = self.partition_for(partition_key)
        log = self._log(topic)[partition]
        log.append((partition_key, data))
        async with self._appended:
            self._appended.notify_all()
        return SendAck(topic=topic, partition=partition, offset=len(log) - 1)

    def _next(self, topic: str, partition: int, group_id: str) -> BrokerMessage | None:
        key = (group_id, topic, partition)
        position = self._positions.setdefault(key, self._committed.get(key, 0))
        log = self._log(topic)[partition]
        if position >= len(log):
            return None
        self._positions[key] = position + 1
        partition_key, data = log[position]
        return BrokerMessage(
            data=data,
            offset=position,
            partition_key=partition_key,
            partition=partition,
            topic=topic,
        )

    async def poll(
        self, topic: str, partition: int, group_id: str, timeout: float
    ) -> BrokerMessage | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self._appended:
            while True:
                self._check_connected()
                message = self._next(topic, partition, group_id)
                if message is not None:
                    return message
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    await asyncio.wait_for(self._appended.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

    async def seek_to_committed(self, topic: str, partition: int, group_id: str) -> None:
        self._check_connected()
        key = (group_id, topic, partition)
        self._positions[key] = self._committed.get(key, 0)

    async def commit(self, message: BrokerMessage, group_id: str) -> None:
        self._check_connected()
        key = (group_id, message.topic, message.partition)
        self._committed[key] = max(self._committed.get(key, 0), message.offset + 1)

    def subscribe(self, topics: list[str], group_id: str) -> AsyncIterator[BrokerMessage]:
        return merged_stream(self, topics, group_id)

    async def close(self) -> None:
        await self.disconnect()

    # --- inspection and fault injection ---

    def committed(self, topic: str, partition: int, group_id: str) -> int:
        return self._committed.get((group_id, topic, partition), 0)

    def seek(self, topic: str, partition: int, group_id: str, offset: int) -> None:
        """Move the read position; messages from offset on are delivered again."""
        self._positions[(group_id, topic, partition)] = offset

    def fail_sends(self, count: int, retryable: bool = True) -> None:
        for _ in range(count):
            self._send_failures.append(
                PublishError("injected send failure", retryable=retryable)
            )

    async def disconnect(self) -> None:
        self._connected = False
        async with self._appended:
            self._appended.notify_all()
        logger.debug("InMemoryBroker: disconnected")

    async def reconnect(self) -> None:
        self._connected = True
        logger.debug("InMemoryBroker: reconnected")
