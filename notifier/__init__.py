"""Reliable event notification core: publish entity-change events, fan them out to handlers."""

from notifier.dispatcher import Dispatcher, RetryPolicy
from notifier.events import (
    DeliveryOrder,
    Event,
    EventDraft,
    EventType,
    HandlerError,
    MessageState,
    PublishResult,
)
from notifier.idempotency import IdempotencyTracker
from notifier.observability import Collector
from notifier.publisher import Publisher

__all__ = [
    "Collector",
    "DeliveryOrder",
    "Dispatcher",
    "Event",
    "EventDraft",
    "EventType",
    "HandlerError",
    "IdempotencyTracker",
    "MessageState",
    "Publisher",
    "PublishResult",
    "RetryPolicy",
]
