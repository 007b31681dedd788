"""Event model, envelope codec and error taxonomy."""

from notifier.events.errors import DecodeError, HandlerError
from notifier.events.models import (
    DeliveryOrder,
    Event,
    EventDraft,
    MessageState,
    PublishResult,
)
from notifier.events.types import EventType

__all__ = [
    "DecodeError",
    "DeliveryOrder",
    "Event",
    "EventDraft",
    "EventType",
    "HandlerError",
    "MessageState",
    "PublishResult",
]
