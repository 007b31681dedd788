"""Tests for the injected metrics collector."""

import uuid
from datetime import datetime, timezone

from notifier.events.models import AttemptOutcome, DeliveryAttempt, MessageState
from notifier.events.types import EventType
from notifier.observability import Collector


def _attempt(event_id: uuid.UUID, n: int, outcome: AttemptOutcome) -> DeliveryAttempt:
    return DeliveryAttempt(
        event_id=event_id,
        handler_id="h",
        attempt_number=n,
        dispatched_at=datetime.now(timezone.utc),
        outcome=outcome,
    )


def test_collectors_do_not_share_state() -> None:
    a, b = Collector(), Collector()
    a.published(EventType.PATIENT_CREATED)
    assert a.count("notifier_published", event_type="PATIENT_CREATED") == 1
    assert b.count("notifier_published", event_type="PATIENT_CREATED") == 0


def test_message_states_counted() -> None:
    c = Collector()
    c.message_finished(MessageState.ACKED)
    c.message_finished(MessageState.ACKED)
    c.message_finished(MessageState.DEAD_LETTERED)
    assert c.count("notifier_messages", state="ACKED") == 2
    assert c.count("notifier_messages", state="DEAD_LETTERED") == 1


def test_attempt_history_is_bounded() -> None:
    c = Collector(history=3)
    event_id = uuid.uuid4()
    for n in range(1, 6):
        c.record_attempt(_attempt(event_id, n, AttemptOutcome.RETRYABLE_FAILURE))
    assert [a.attempt_number for a in c.attempts_for(event_id)] == [3, 4, 5]
    assert c.attempt_count(AttemptOutcome.RETRYABLE_FAILURE) == 5
