"""Tests for Publisher: validation, id/time assignment, transport failure results, counters."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from notifier.broker import InMemoryBroker
from notifier.events import codec
from notifier.events.errors import InvalidEventError
from notifier.events.models import EventDraft, PublishStatus
from notifier.events.types import EventType
from notifier.observability import Collector
from notifier.publisher import Publisher

TOPIC = "patient"


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(partitions=4)


@pytest.fixture
def collector() -> Collector:
    return Collector()


@pytest.fixture
def publisher(broker: InMemoryBroker, collector: Collector) -> Publisher:
    return Publisher(broker, TOPIC, collector, source="patient-service")


class TestPublish:
    @pytest.mark.asyncio
    async def test_assigns_id_and_timestamp(self, publisher: Publisher, broker) -> None:
        result = await publisher.publish(
            EventDraft(EventType.PATIENT_CREATED, "p1", b'{"name": "Jane"}')
        )
        assert result.ok
        assert result.status is PublishStatus.ACCEPTED
        assert isinstance(result.event.id, uuid.UUID)
        assert result.event.id.version == 4
        assert result.event.occurred_at.tzinfo is not None
        assert result.event.source == "patient-service"

        message = await broker.poll(TOPIC, result.partition, "reader", timeout=0)
        assert message is not None
        assert message.offset == result.offset
        assert message.partition_key == "p1"
        assert codec.decode(message.data) == result.event

    @pytest.mark.asyncio
    async def test_keeps_supplied_id_and_time(self, publisher: Publisher) -> None:
        event_id = uuid.uuid4()
        occurred = datetime(2024, 2, 29, 8, 0, tzinfo=timezone.utc)
        result = await publisher.publish(
            EventDraft(EventType.PATIENT_UPDATED, "p1", id=event_id, occurred_at=occurred)
        )
        assert result.event.id == event_id
        assert result.event.occurred_at == occurred

    @pytest.mark.asyncio
    async def test_string_type_is_coerced(self, publisher: Publisher) -> None:
        result = await publisher.publish(EventDraft("BILLING_ACCOUNT_CREATED", "p1"))
        assert result.event.type is EventType.BILLING_ACCOUNT_CREATED

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase_under_frozen_clock(
        self, broker, collector
    ) -> None:
        frozen = datetime(2024, 1, 1, tzinfo=timezone.utc)
        publisher = Publisher(broker, TOPIC, collector, clock=lambda: frozen)
        stamps = [
            (await publisher.publish(EventDraft(EventType.PATIENT_UPDATED, "p1"))).event.occurred_at
            for _ in range(5)
        ]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5
        assert stamps[-1] - stamps[0] == timedelta(microseconds=4)

    @pytest.mark.asyncio
    async def test_same_subject_same_partition(self, publisher: Publisher) -> None:
        partitions = {
            (await publisher.publish(EventDraft(EventType.PATIENT_UPDATED, "p42"))).partition
            for _ in range(5)
        }
        assert len(partitions) == 1

    @pytest.mark.asyncio
    async def test_v1_publisher_omits_source(self, broker, collector) -> None:
        publisher = Publisher(broker, TOPIC, collector, source="svc", schema_version=1)
        result = await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p1"))
        assert result.event.schema_version == 1
        assert result.event.source == ""

    @pytest.mark.asyncio
    async def test_counts_per_type(self, publisher: Publisher, collector: Collector) -> None:
        await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p1"))
        await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p2"))
        await publisher.publish(EventDraft(EventType.PATIENT_DELETED, "p1"))
        assert collector.count("notifier_published", event_type="PATIENT_CREATED") == 2
        assert collector.count("notifier_published", event_type="PATIENT_DELETED") == 1


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("subject_id", ["", "   "])
    async def test_empty_subject_rejected(self, publisher: Publisher, subject_id: str) -> None:
        with pytest.raises(InvalidEventError):
            await publisher.publish(EventDraft(EventType.PATIENT_CREATED, subject_id))

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, publisher: Publisher) -> None:
        with pytest.raises(InvalidEventError):
            await publisher.publish(EventDraft("PATIENT_TELEPORTED", "p1"))

    def test_invalid_event_error_is_value_error(self) -> None:
        assert issubclass(InvalidEventError, ValueError)


class TestTransportFailure:
    """Failures come back as results, never exceptions."""

    @pytest.mark.asyncio
    async def test_retryable_failure(self, publisher: Publisher, broker, collector) -> None:
        broker.fail_sends(1)
        result = await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p1"))
        assert result.status is PublishStatus.FAILED
        assert result.retryable is True
        assert result.error is not None
        assert result.partition is None
        assert collector.count("notifier_publish_failed", event_type="PATIENT_CREATED") == 1
        assert collector.count("notifier_published", event_type="PATIENT_CREATED") == 0

        retry = await publisher.publish(
            EventDraft(EventType.PATIENT_CREATED, "p1", id=result.event.id)
        )
        assert retry.ok
        assert retry.event.id == result.event.id

    @pytest.mark.asyncio
    async def test_non_retryable_failure(self, publisher: Publisher, broker) -> None:
        broker.fail_sends(1, retryable=False)
        result = await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p1"))
        assert result.status is PublishStatus.FAILED
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_connection_lost_is_retryable(self, publisher: Publisher, broker) -> None:
        await broker.disconnect()
        result = await publisher.publish(EventDraft(EventType.PATIENT_CREATED, "p1"))
        assert not result.ok
        assert result.retryable is True
