"""Counters and delivery-attempt history, injected into publisher and dispatcher."""

import threading
import uuid
from collections import deque

from prometheus_client import CollectorRegistry, Counter

from notifier.events.models import AttemptOutcome, DeliveryAttempt, MessageState
from notifier.events.types import EventType

__all__ = ["Collector"]


class Collector:
    """Per-instance metrics. Each collector owns its registry; nothing is process-global."""

    def __init__(self, registry: CollectorRegistry | None = None, history: int = 1000) -> None:
        self.registry = registry or CollectorRegistry()
        self._published = Counter(
            "notifier_published",
            "Events accepted by the broker",
            ["event_type"],
            registry=self.registry,
        )
        self._publish_failed = Counter(
            "notifier_publish_failed",
            "Publish calls that failed at the transport",
            ["event_type"],
            registry=self.registry,
        )
        self._messages = Counter(
            "notifier_messages",
            "Messages that reached a terminal state",
            ["state"],
            registry=self.registry,
        )
        self._attempts_total = Counter(
            "notifier_delivery_attempts",
            "Handler invocations by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self._attempts: deque[DeliveryAttempt] = deque(maxlen=history)
        self._lock = threading.Lock()

    def published(self, event_type: EventType) -> None:
        self._published.labels(event_type=event_type.value).inc()

    def publish_failed(self, event_type: EventType) -> None:
        self._publish_failed.labels(event_type=event_type.value).inc()

    def message_finished(self, state: MessageState) -> None:
        self._messages.labels(state=state.value).inc()

    def record_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts_total.labels(outcome=attempt.outcome.value).inc()
        with self._lock:
            self._attempts.append(attempt)

    def attempts_for(self, event_id: uuid.UUID) -> list[DeliveryAttempt]:
        with self._lock:
            return [a for a in self._attempts if a.event_id == event_id]

    def count(self, name: str, **labels: str) -> float:
        """Read a counter sample, e.g. count("notifier_published", event_type="PATIENT_CREATED")."""
        value = self.registry.get_sample_value(f"{name}_total", labels)
        return value or 0.0

    def attempt_count(self, outcome: AttemptOutcome) -> float:
        return self.count("notifier_delivery_attempts", outcome=outcome.value)
