"""Bounded recent-id cache for duplicate suppression."""

import threading
import uuid
from collections import OrderedDict

__all__ = ["IdempotencyTracker"]


class IdempotencyTracker:
    """LRU set of event ids already handled.

    Capacity should cover the broker's redelivery window: an id evicted before
    its duplicate arrives is processed again. Shared by all partition workers,
    so every operation takes the lock.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._ids: OrderedDict[uuid.UUID, None] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def seen(self, event_id: uuid.UUID) -> bool:
        with self._lock:
            if event_id not in self._ids:
                return False
            self._ids.move_to_end(event_id)
            return True

    def mark_seen(self, event_id: uuid.UUID) -> None:
        with self._lock:
            self._ids[event_id] = None
            self._ids.move_to_end(event_id)
            while len(self._ids) > self._capacity:
                self._ids.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)
