"""Tests for patient payload schema and the built-in log handler."""

import logging
import uuid
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from notifier.events.errors import HandlerErrorKind
from notifier.events.models import Event
from notifier.events.payloads import PatientEventPayload, log_patient_event, patient_event_draft
from notifier.events.types import EventType


def _event(payload: bytes, event_type: EventType = EventType.PATIENT_CREATED) -> Event:
    return Event(
        id=uuid.uuid4(),
        type=event_type,
        subject_id="p1",
        payload=payload,
        occurred_at=datetime.now(timezone.utc),
    )


def test_draft_keyed_by_patient_id() -> None:
    draft = patient_event_draft("p1", "Jane Doe", "jane@example.com", EventType.PATIENT_UPDATED)
    assert draft.subject_id == "p1"
    assert draft.type is EventType.PATIENT_UPDATED
    payload = PatientEventPayload.from_bytes(draft.payload)
    assert payload.name == "Jane Doe"
    assert payload.event_type is EventType.PATIENT_UPDATED


def test_invalid_email_rejected() -> None:
    with pytest.raises(ValidationError):
        PatientEventPayload(patient_id="p1", name="X", email="not-an-email")


def test_log_handler_logs_received_event(caplog: pytest.LogCaptureFixture) -> None:
    draft = patient_event_draft("p1", "Jane Doe", "jane@example.com")
    with caplog.at_level(logging.INFO, logger="notifier.events.payloads"):
        assert log_patient_event(_event(draft.payload)) is None
    assert "Received patient event" in caplog.text
    assert "jane@example.com" in caplog.text


def test_log_handler_reports_fatal_on_bad_payload() -> None:
    error = log_patient_event(_event(b"{not json"))
    assert error is not None
    assert error.kind is HandlerErrorKind.FATAL
