"""Broker client protocol: a partitioned log, ordered per key, with per-group offsets.

The dispatcher reads through poll() one partition at a time and commits only
after a message reaches ACKED or DEAD_LETTERED.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, runtime_checkable

__all__ = ["BrokerClient", "BrokerMessage", "SendAck", "merged_stream"]


@dataclass(frozen=True)
class SendAck:
    """Write is durably queued at (topic, partition, offset)."""

    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class BrokerMessage:
    data: bytes
    offset: int
    partition_key: str
    partition: int
    topic: str


@runtime_checkable
class BrokerClient(Protocol):
    async def send(self, topic: str, partition_key: str, data: bytes) -> SendAck:
        """Append data; return after the write is durable. Raises BrokerError/PublishError."""

    def partitions_for(self, topic: str) -> list[int]:
        """Partition ids of topic."""

    async def poll(
        self, topic: str, partition: int, group_id: str, timeout: float
    ) -> BrokerMessage | None:
        """Next message past the group's position, or None after timeout. Raises BrokerError."""

    async def seek_to_committed(self, topic: str, partition: int, group_id: str) -> None:
        """Rewind the group's read position to its last committed offset (on assignment)."""

    async def commit(self, message: BrokerMessage, group_id: str) -> None:
        """Mark message (and everything before it in its partition) as processed."""

    def subscribe(self, topics: list[str], group_id: str) -> AsyncIterator[BrokerMessage]:
        """Stream messages from all partitions of topics. Does not commit."""

    async def close(self) -> None:
        """Release connections."""


async def merged_stream(
    broker: BrokerClient, topics: list[str], group_id: str, idle_wait: float = 0.1
) -> AsyncIterator[BrokerMessage]:
    """Round-robin over every partition of topics, starting at committed offsets."""
    assignments = [(t, p) for t in topics for p in broker.partitions_for(t)]
    for topic, partition in assignments:
        await broker.seek_to_committed(topic, partition, group_id)
    while True:
        idle = True
        for topic, partition in assignments:
            message = await broker.poll(topic, partition, group_id, timeout=0)
            if message is not None:
                idle = False
                yield message
        if idle:
            await asyncio.sleep(idle_wait)
