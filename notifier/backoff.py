"""Retry delays for handler retries and broker reconnects."""

import random
from dataclasses import dataclass

__all__ = ["Backoff", "compute_retry_delay"]


def compute_retry_delay(
    attempt: int,
    base: float = 0.5,
    max_delay: float = 30.0,
    jitter_ratio: float = 0.1,
) -> float:
    """Exponential backoff with jitter. attempt is zero-based."""
    delay = min(base * (2**attempt), max_delay)
    jitter = random.uniform(0, delay * jitter_ratio) if jitter_ratio > 0 else 0.0
    return delay + jitter


@dataclass
class Backoff:
    """Delay sequence for one retry run. Never returns less than the previous delay."""

    base: float = 0.5
    max_delay: float = 30.0
    jitter_ratio: float = 0.1
    attempt: int = 0
    last_delay: float = 0.0

    def next_delay(self) -> float:
        delay = compute_retry_delay(self.attempt, self.base, self.max_delay, self.jitter_ratio)
        self.attempt += 1
        self.last_delay = max(delay, self.last_delay)
        return self.last_delay

    def reset(self) -> None:
        self.attempt = 0
        self.last_delay = 0.0
