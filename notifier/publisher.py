"""Producer-facing API: validate a draft, stamp id and time, hand it to the broker."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from notifier.broker.contract import BrokerClient
from notifier.events import codec
from notifier.events.errors import BrokerError, InvalidEventError, PublishError
from notifier.events.models import (
    CURRENT_SCHEMA_VERSION,
    Event,
    EventDraft,
    PublishResult,
    PublishStatus,
)
from notifier.events.types import EventType
from notifier.observability import Collector

logger = logging.getLogger(__name__)

__all__ = ["Publisher"]

_ONE_US = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Publisher:
    """Publishes drafts to one topic. Retry policy belongs to the caller."""

    def __init__(
        self,
        broker: BrokerClient,
        topic: str,
        collector: Collector,
        source: str = "",
        schema_version: int = CURRENT_SCHEMA_VERSION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._broker = broker
        self._topic = topic
        self._collector = collector
        self._source = source
        self._schema_version = schema_version
        self._clock = clock
        self._last_occurred_at: datetime | None = None

    @property
    def topic(self) -> str:
        return self._topic

    def _next_timestamp(self) -> datetime:
        """Wall clock, but never at or before the previous stamp from this publisher."""
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if self._last_occurred_at is not None and now <= self._last_occurred_at:
            now = self._last_occurred_at + _ONE_US
        self._last_occurred_at = now
        return now

    def build_event(self, draft: EventDraft) -> Event:
        """Validate draft and fill in id/occurred_at. Raises InvalidEventError."""
        if not draft.subject_id or not draft.subject_id.strip():
            raise InvalidEventError("subject_id must be non-empty")
        try:
            event_type = EventType.parse(draft.type)
        except ValueError as e:
            raise InvalidEventError(f"unknown event type: {draft.type!r}") from e
        occurred_at = draft.occurred_at
        if occurred_at is None:
            occurred_at = self._next_timestamp()
        elif occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        source = draft.source if draft.source is not None else self._source
        if self._schema_version < 2:
            source = ""  # v1 envelopes carry no source
        return Event(
            id=draft.id or uuid.uuid4(),
            type=event_type,
            subject_id=draft.subject_id,
            payload=bytes(draft.payload),
            occurred_at=occurred_at,
            schema_version=self._schema_version,
            source=source,
        )

    async def publish(self, draft: EventDraft) -> PublishResult:
        """Return once the broker acked the write. Transport failures come back as FAILED."""
        event = self.build_event(draft)
        data = codec.encode(event)
        try:
            ack = await self._broker.send(self._topic, event.subject_id, data)
        except BrokerError as e:
            return self._failed(event, PublishError(str(e), retryable=True))
        except PublishError as e:
            return self._failed(event, e)
        self._collector.published(event.type)
        logger.debug(
            "Published %s %s subject=%s -> %s[%d]@%d",
            event.type.value,
            event.id,
            event.subject_id,
            ack.topic,
            ack.partition,
            ack.offset,
        )
        return PublishResult(
            status=PublishStatus.ACCEPTED,
            event=event,
            partition=ack.partition,
            offset=ack.offset,
        )

    def _failed(self, event: Event, error: PublishError) -> PublishResult:
        self._collector.publish_failed(event.type)
        logger.warning(
            "Publish failed for %s %s subject=%s (retryable=%s): %s",
            event.type.value,
            event.id,
            event.subject_id,
            error.retryable,
            error,
        )
        return PublishResult(
            status=PublishStatus.FAILED,
            event=event,
            retryable=error.retryable,
            error=error,
        )
