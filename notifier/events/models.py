"""Event, delivery and subscription models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from notifier.events.errors import HandlerError, PublishError
from notifier.events.types import EventType

__all__ = [
    "AttemptOutcome",
    "DeadLetterEntry",
    "DeliveryAttempt",
    "DeliveryOrder",
    "Event",
    "EventDraft",
    "Handler",
    "MessageState",
    "PublishResult",
    "PublishStatus",
    "Subscription",
]

CURRENT_SCHEMA_VERSION = 2


@dataclass(frozen=True)
class Event:
    """Immutable event passed to handlers. `id` is the idempotency key."""

    id: uuid.UUID
    type: EventType
    subject_id: str
    payload: bytes
    occurred_at: datetime
    schema_version: int = CURRENT_SCHEMA_VERSION
    source: str = ""


@dataclass(frozen=True)
class EventDraft:
    """What a producer hands to Publisher.publish(). id/occurred_at are filled in if absent."""

    type: EventType | str
    subject_id: str
    payload: bytes = b""
    id: uuid.UUID | None = None
    occurred_at: datetime | None = None
    source: str | None = None


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


@dataclass(frozen=True)
class DeliveryAttempt:
    """One handler invocation. Kept for observability, never used for correctness."""

    event_id: uuid.UUID
    handler_id: str
    attempt_number: int
    dispatched_at: datetime
    outcome: AttemptOutcome
    detail: str = ""
    retry_delay: float | None = None  # backoff scheduled after this attempt

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "handler_id": self.handler_id,
            "attempt_number": self.attempt_number,
            "dispatched_at": self.dispatched_at.isoformat(),
            "outcome": self.outcome.value,
            "detail": self.detail,
            "retry_delay": self.retry_delay,
        }


class DeliveryOrder(str, Enum):
    PER_SUBJECT = "per-subjectId"
    NONE = "none"


Handler = Callable[[Event], Union[Awaitable[HandlerError | None], HandlerError, None]]


@dataclass(frozen=True)
class Subscription:
    """Handler registration. Resolved into the dispatch table before the dispatcher starts."""

    handler_id: str
    event_types: frozenset[EventType]
    delivery_order: DeliveryOrder
    handler: Handler = field(compare=False, repr=False)


class MessageState(str, Enum):
    RECEIVED = "RECEIVED"
    DECODING = "DECODING"
    HANDLING = "HANDLING"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    ACKED = "ACKED"
    DEAD_LETTERED = "DEAD_LETTERED"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageState.ACKED, MessageState.DEAD_LETTERED)


class PublishStatus(str, Enum):
    ACCEPTED = "accepted"
    FAILED = "failed"


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    event: Event
    retryable: bool = False
    error: PublishError | None = None
    partition: int | None = None
    offset: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is PublishStatus.ACCEPTED


@dataclass(frozen=True)
class DeadLetterEntry:
    """Terminal record for operators. `event` is None when the envelope did not decode."""

    reason: str
    raw: bytes
    event: Event | None = None
    handler_id: str | None = None
    attempts: tuple[DeliveryAttempt, ...] = ()
    topic: str = ""
    partition: int = 0
    offset: int = 0
    dead_lettered_at: datetime | None = None
