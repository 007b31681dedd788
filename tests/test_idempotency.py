"""Tests for IdempotencyTracker: membership, LRU eviction, concurrent access."""

import threading
import uuid

import pytest

from notifier.idempotency import IdempotencyTracker


def test_unseen_until_marked() -> None:
    tracker = IdempotencyTracker(capacity=4)
    event_id = uuid.uuid4()
    assert tracker.seen(event_id) is False
    tracker.mark_seen(event_id)
    assert tracker.seen(event_id) is True
    assert len(tracker) == 1


def test_evicts_least_recently_used() -> None:
    tracker = IdempotencyTracker(capacity=3)
    ids = [uuid.uuid4() for _ in range(4)]
    for event_id in ids[:3]:
        tracker.mark_seen(event_id)
    assert tracker.seen(ids[0])  # refresh: ids[1] is now the oldest
    tracker.mark_seen(ids[3])
    assert len(tracker) == 3
    assert tracker.seen(ids[0])
    assert not tracker.seen(ids[1])
    assert tracker.seen(ids[2])
    assert tracker.seen(ids[3])


def test_mark_twice_keeps_one_entry() -> None:
    tracker = IdempotencyTracker(capacity=2)
    event_id = uuid.uuid4()
    tracker.mark_seen(event_id)
    tracker.mark_seen(event_id)
    assert len(tracker) == 1


def test_clear() -> None:
    tracker = IdempotencyTracker()
    tracker.mark_seen(uuid.uuid4())
    tracker.clear()
    assert len(tracker) == 0


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        IdempotencyTracker(capacity=0)


def test_concurrent_marks_stay_bounded() -> None:
    tracker = IdempotencyTracker(capacity=100)

    def worker() -> None:
        for _ in range(500):
            event_id = uuid.uuid4()
            tracker.mark_seen(event_id)
            tracker.seen(event_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(tracker) == 100
