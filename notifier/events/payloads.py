"""Payload schemas carried inside the envelope, and helpers for building drafts."""

import logging

from pydantic import BaseModel, EmailStr, ValidationError

from notifier.events.errors import HandlerError
from notifier.events.models import Event, EventDraft
from notifier.events.types import EventType

logger = logging.getLogger(__name__)

__all__ = ["PatientEventPayload", "log_patient_event", "patient_event_draft"]


class PatientEventPayload(BaseModel):
    """Patient change as emitted by patient-service."""

    patient_id: str
    name: str
    email: EmailStr
    event_type: EventType = EventType.PATIENT_CREATED

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PatientEventPayload":
        return cls.model_validate_json(data)


def patient_event_draft(
    patient_id: str,
    name: str,
    email: str,
    event_type: EventType = EventType.PATIENT_CREATED,
) -> EventDraft:
    """Build a draft keyed by patient id so one patient's events stay ordered."""
    payload = PatientEventPayload(
        patient_id=patient_id, name=name, email=email, event_type=event_type
    )
    return EventDraft(type=event_type, subject_id=patient_id, payload=payload.to_bytes())


def log_patient_event(event: Event) -> HandlerError | None:
    """Log a received patient event. An unparseable payload is fatal: retrying won't fix it."""
    try:
        patient = PatientEventPayload.from_bytes(event.payload)
    except ValidationError as e:
        return HandlerError.fatal(f"invalid patient payload: {e.error_count()} error(s)")
    logger.info(
        "Received patient event [id=%s, name=%s, email=%s, type=%s]",
        patient.patient_id,
        patient.name,
        patient.email,
        event.type.value,
    )
    return None
