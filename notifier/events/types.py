"""Known event types. Producers may only publish these; consumers subscribe by them."""

from enum import Enum


class EventType(str, Enum):
    """Entity-change events emitted by the CRUD services."""

    # patient-service
    PATIENT_CREATED = "PATIENT_CREATED"
    PATIENT_UPDATED = "PATIENT_UPDATED"
    PATIENT_DELETED = "PATIENT_DELETED"

    # billing-service: an account is opened for every new patient
    BILLING_ACCOUNT_CREATED = "BILLING_ACCOUNT_CREATED"

    # appointment-service
    APPOINTMENT_SCHEDULED = "APPOINTMENT_SCHEDULED"
    APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"

    # doctor-service
    DOCTOR_UPDATED = "DOCTOR_UPDATED"

    # auth-service
    USER_REGISTERED = "USER_REGISTERED"

    @classmethod
    def parse(cls, value: "EventType | str") -> "EventType":
        """Coerce a string to EventType. Raises ValueError for unknown types."""
        if isinstance(value, cls):
            return value
        return cls(value)


PATIENT_EVENTS = frozenset(
    {EventType.PATIENT_CREATED, EventType.PATIENT_UPDATED, EventType.PATIENT_DELETED}
)
