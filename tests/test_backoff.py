"""Tests for retry delay computation."""

from notifier.backoff import Backoff, compute_retry_delay


def test_exponential_without_jitter() -> None:
    assert [compute_retry_delay(a, base=1.0, max_delay=100.0, jitter_ratio=0) for a in range(4)] == [
        1.0,
        2.0,
        4.0,
        8.0,
    ]


def test_capped() -> None:
    assert compute_retry_delay(20, base=1.0, max_delay=5.0, jitter_ratio=0) == 5.0


def test_jitter_bounds() -> None:
    for _ in range(100):
        delay = compute_retry_delay(2, base=1.0, max_delay=100.0, jitter_ratio=0.3)
        assert 4.0 <= delay <= 5.2


def test_sequence_never_decreases_at_cap() -> None:
    backoff = Backoff(base=0.1, max_delay=0.4, jitter_ratio=1.0)
    delays = [backoff.next_delay() for _ in range(30)]
    assert delays == sorted(delays)
    assert delays[0] >= 0.1


def test_reset() -> None:
    backoff = Backoff(base=1.0, max_delay=10.0, jitter_ratio=0)
    backoff.next_delay()
    backoff.next_delay()
    backoff.reset()
    assert backoff.next_delay() == 1.0
