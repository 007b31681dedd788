"""Versioned binary envelope for events.

Layout: 3-byte magic, 1-byte schema version, msgpack array body. Body fields
are positional so encoding is deterministic.

    v1: [id(16 bytes), type, subject_id, payload(bin), occurred_at(us since epoch)]
    v2: v1 + [source]

Readers keep decoders for older versions so an N-1 producer stays readable.
"""

import logging
import struct
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import msgpack

from notifier.events.errors import DecodeError, DecodeErrorKind
from notifier.events.models import Event
from notifier.events.types import EventType

logger = logging.getLogger(__name__)

__all__ = ["MAGIC", "SUPPORTED_VERSIONS", "decode", "encode"]

MAGIC = b"NTF"
_HEADER = struct.Struct(">3sB")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_US = timedelta(microseconds=1)


class _Malformed(Exception):
    """Internal: body failed validation. Converted to DecodeError at the boundary."""


def _to_micros(ts: datetime) -> int:
    if ts.tzinfo is None:
        raise ValueError("occurred_at must be timezone-aware")
    return (ts - _EPOCH) // _ONE_US


def _from_micros(value: Any) -> datetime:
    if not isinstance(value, int) or isinstance(value, bool):
        raise _Malformed("occurred_at is not an integer")
    try:
        return _EPOCH + timedelta(microseconds=value)
    except OverflowError as e:
        raise _Malformed(f"occurred_at out of range: {value}") from e


def _common_fields(event: Event) -> list[Any]:
    return [
        event.id.bytes,
        event.type.value,
        event.subject_id,
        bytes(event.payload),
        _to_micros(event.occurred_at),
    ]


def _encode_v1(event: Event) -> list[Any]:
    return _common_fields(event)


def _encode_v2(event: Event) -> list[Any]:
    return _common_fields(event) + [event.source]


def _parse_common(body: Any, expected_len: int) -> dict[str, Any]:
    if not isinstance(body, list) or len(body) != expected_len:
        raise _Malformed(f"expected array of {expected_len} fields")
    raw_id, raw_type, subject_id, payload, occurred = body[:5]
    if not isinstance(raw_id, bytes) or len(raw_id) != 16:
        raise _Malformed("id must be 16 raw bytes")
    try:
        event_type = EventType(raw_type)
    except ValueError as e:
        raise _Malformed(f"unknown event type: {raw_type!r}") from e
    if not isinstance(subject_id, str) or not subject_id:
        raise _Malformed("subject_id must be a non-empty string")
    if not isinstance(payload, bytes):
        raise _Malformed("payload must be binary")
    return {
        "id": uuid.UUID(bytes=raw_id),
        "type": event_type,
        "subject_id": subject_id,
        "payload": payload,
        "occurred_at": _from_micros(occurred),
    }


def _decode_v1(body: Any) -> Event:
    return Event(schema_version=1, **_parse_common(body, 5))


def _decode_v2(body: Any) -> Event:
    fields = _parse_common(body, 6)
    source = body[5]
    if not isinstance(source, str):
        raise _Malformed("source must be a string")
    return Event(schema_version=2, source=source, **fields)


_ENCODERS: dict[int, Callable[[Event], list[Any]]] = {
    1: _encode_v1,
    2: _encode_v2,
}

_DECODERS: dict[int, Callable[[Any], Event]] = {
    1: _decode_v1,
    2: _decode_v2,
}

SUPPORTED_VERSIONS = frozenset(_DECODERS)


def encode(event: Event) -> bytes:
    """Serialize event using the envelope of its schema_version. Deterministic."""
    encoder = _ENCODERS.get(event.schema_version)
    if encoder is None:
        raise ValueError(f"no encoder for schema version {event.schema_version}")
    body = msgpack.packb(encoder(event), use_bin_type=True)
    return _HEADER.pack(MAGIC, event.schema_version) + body


def decode(data: bytes) -> Event | DecodeError:
    """Parse an envelope. Returns DecodeError instead of raising."""
    if len(data) < _HEADER.size:
        return DecodeError(DecodeErrorKind.MALFORMED, f"envelope too short ({len(data)} bytes)")
    magic, version = _HEADER.unpack_from(data)
    if magic != MAGIC:
        return DecodeError(DecodeErrorKind.MALFORMED, "bad magic")
    decoder = _DECODERS.get(version)
    if decoder is None:
        return DecodeError(
            DecodeErrorKind.UNSUPPORTED_VERSION, f"schema version {version} not supported"
        )
    try:
        body = msgpack.unpackb(data[_HEADER.size:], raw=False)
        return decoder(body)
    except _Malformed as e:
        return DecodeError(DecodeErrorKind.MALFORMED, str(e))
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        logger.debug("msgpack rejected envelope v%d: %s", version, e)
        return DecodeError(DecodeErrorKind.MALFORMED, f"body: {e}")
