"""Error taxonomy.

DecodeError and HandlerError are plain result values: decode() returns one
instead of raising, and handlers return one to report a failure. PublishError
and BrokerError are raised by broker clients; the publisher and dispatcher
catch them and turn them into results or retries.
"""

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "BrokerError",
    "BrokerErrorKind",
    "DecodeError",
    "DecodeErrorKind",
    "HandlerError",
    "HandlerErrorKind",
    "InvalidEventError",
    "PublishError",
    "PublishErrorKind",
]


class DecodeErrorKind(str, Enum):
    MALFORMED = "MALFORMED"
    UNSUPPORTED_VERSION = "UNSUPPORTED_VERSION"


class HandlerErrorKind(str, Enum):
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


class PublishErrorKind(str, Enum):
    TRANSPORT_UNAVAILABLE = "TRANSPORT_UNAVAILABLE"


class BrokerErrorKind(str, Enum):
    CONNECTION_LOST = "CONNECTION_LOST"


@dataclass(frozen=True)
class DecodeError:
    """Envelope could not be turned into an Event. Never retried."""

    kind: DecodeErrorKind
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


@dataclass(frozen=True)
class HandlerError:
    """Failure reported by a handler. RETRYABLE goes to backoff, FATAL to dead-letter."""

    kind: HandlerErrorKind
    reason: str = ""

    @classmethod
    def retryable(cls, reason: str = "") -> "HandlerError":
        return cls(HandlerErrorKind.RETRYABLE, reason)

    @classmethod
    def fatal(cls, reason: str = "") -> "HandlerError":
        return cls(HandlerErrorKind.FATAL, reason)

    @property
    def is_retryable(self) -> bool:
        return self.kind is HandlerErrorKind.RETRYABLE

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.reason}" if self.reason else self.kind.value


class InvalidEventError(ValueError):
    """EventDraft violates publish constraints (empty subject, unknown type)."""


class PublishError(Exception):
    """Broker refused or could not durably queue a write."""

    def __init__(
        self,
        detail: str = "",
        kind: PublishErrorKind = PublishErrorKind.TRANSPORT_UNAVAILABLE,
        retryable: bool = True,
    ) -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.retryable = retryable
        self.detail = detail


class BrokerError(Exception):
    """Connection to the broker was lost. Callers back off and reconnect."""

    def __init__(
        self, detail: str = "", kind: BrokerErrorKind = BrokerErrorKind.CONNECTION_LOST
    ) -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
