# src/vigil/envelope/codec.py
"""Envelope wire format: serialization and strict parsing.

Layout (all header lines are single-line JSON objects)::

    {envelope headers}\n
    {item headers incl. "type" and "length"}\n
    <exactly `length` payload bytes>\n
    {item headers}\n
    ...

Payloads are opaque bytes. A payload containing newlines is never split,
because its extent comes from ``length``. An item header without ``length``
is allowed by the protocol: its payload then runs to the next newline.

Parsing is strict about framing (length, truncation, separators, header
JSON) and lenient about content: unknown item types are preserved as-is.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from vigil.contracts.enums import DataCategory, item_category
from vigil.contracts.transport import TransportRequest
from vigil.errors import EnvelopeParseError

_NEWLINE = b"\n"


def _freeze(headers: Mapping[str, Any]) -> Mapping[str, Any]:
    return headers if isinstance(headers, MappingProxyType) else MappingProxyType(dict(headers))


def _dump_json(value: Any) -> bytes:
    # Compact, and never emits a raw newline, so a header always fits on one line
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


@dataclass(frozen=True, slots=True)
class EnvelopeItem:
    """One typed item: headers plus raw payload bytes.

    Build items with create() so that ``length`` always matches the payload.
    """

    headers: Mapping[str, Any]
    payload: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze(self.headers))

    @classmethod
    def create(cls, item_type: str, payload: bytes | str | Mapping[str, Any] | list[Any], **headers: Any) -> "EnvelopeItem":
        """Build an item, encoding the payload and setting ``type``/``length``.

        Args:
            item_type: Item type header value
            payload: Raw bytes, text (UTF-8 encoded) or a JSON-serializable value
            **headers: Additional item headers (filename, content_type, ...)
        """
        if isinstance(payload, bytes):
            body = payload
        elif isinstance(payload, str):
            body = payload.encode("utf-8")
        else:
            body = _dump_json(payload)
        return cls(headers={"type": item_type, **headers, "length": len(body)}, payload=body)

    @property
    def type(self) -> str | None:
        value = self.headers.get("type")
        return value if isinstance(value, str) else None

    @property
    def category(self) -> DataCategory:
        return item_category(self.type)

    def json(self) -> Any:
        """Decode the payload as JSON.

        Raises:
            ValueError: If the payload is not valid JSON.
        """
        return json.loads(self.payload)


@dataclass(frozen=True, slots=True)
class Envelope:
    """Shared headers plus an ordered tuple of items."""

    headers: Mapping[str, Any]
    items: tuple[EnvelopeItem, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze(self.headers))
        object.__setattr__(self, "items", tuple(self.items))

    @property
    def category(self) -> DataCategory:
        """Category of the first item, which decides rate limiting for the whole envelope."""
        if not self.items:
            return DataCategory.DEFAULT
        return self.items[0].category

    def with_item(self, item: EnvelopeItem) -> "Envelope":
        return Envelope(headers=self.headers, items=(*self.items, item))


def serialize_envelope(envelope: Envelope) -> bytes:
    """Serialize an envelope to its wire bytes.

    ``length`` in every item header is rewritten from the actual payload so
    that hand-built items cannot desynchronize the framing.
    """
    parts: list[bytes] = [_dump_json(dict(envelope.headers)), _NEWLINE]
    for item in envelope.items:
        headers = {**item.headers, "length": len(item.payload)}
        parts.extend((_dump_json(headers), _NEWLINE, item.payload, _NEWLINE))
    return b"".join(parts)


def get_envelope_size(envelope: Envelope) -> int:
    """Size in bytes of the serialized envelope."""
    return len(serialize_envelope(envelope))


def _parse_header_line(data: bytes, start: int, end: int, what: str) -> dict[str, Any]:
    try:
        value = json.loads(data[start:end])
    except (UnicodeDecodeError, ValueError) as e:
        raise EnvelopeParseError(f"Invalid JSON in {what}: {e}", offset=start) from e
    if not isinstance(value, dict):
        raise EnvelopeParseError(f"{what} must be a JSON object, got {type(value).__name__}", offset=start)
    return value


def _line_end(data: bytes, start: int) -> int:
    end = data.find(_NEWLINE, start)
    return len(data) if end == -1 else end


def parse_envelope(data: bytes | str) -> Envelope:
    """Parse wire bytes into an Envelope.

    Args:
        data: Serialized envelope; text is UTF-8 encoded first.

    Returns:
        Parsed envelope with items in wire order.

    Raises:
        EnvelopeParseError: On empty input, invalid header JSON, a missing or
            non-string item type, a non-integer or negative length, a payload
            shorter than its declared length, or payload bytes not followed
            by a newline.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not data.strip():
        raise EnvelopeParseError("Envelope is empty", offset=0)

    header_end = _line_end(data, 0)
    headers = _parse_header_line(data, 0, header_end, "envelope header")
    pos = header_end + 1
    items: list[EnvelopeItem] = []

    while pos < len(data):
        # Blank lines between items carry no data
        if data[pos : pos + 1] == _NEWLINE:
            pos += 1
            continue

        item_header_end = _line_end(data, pos)
        item_headers = _parse_header_line(data, pos, item_header_end, "item header")
        item_type = item_headers.get("type")
        if not isinstance(item_type, str) or not item_type:
            raise EnvelopeParseError("Item header is missing a string 'type'", offset=pos)
        payload_start = min(item_header_end + 1, len(data))

        if "length" in item_headers:
            length = item_headers["length"]
            if isinstance(length, bool) or not isinstance(length, int) or length < 0:
                raise EnvelopeParseError(f"Invalid item length {length!r}", offset=pos)
            payload_end = payload_start + length
            if payload_end > len(data):
                raise EnvelopeParseError(
                    f"Truncated payload: declared {length} bytes, {len(data) - payload_start} available",
                    offset=payload_start,
                )
            if payload_end < len(data) and data[payload_end : payload_end + 1] != _NEWLINE:
                raise EnvelopeParseError("Payload not followed by newline separator", offset=payload_end)
        else:
            payload_end = _line_end(data, payload_start)

        items.append(EnvelopeItem(headers=item_headers, payload=data[payload_start:payload_end]))
        pos = payload_end + 1

    return Envelope(headers=headers, items=tuple(items))


def to_transport_request(envelope: Envelope) -> TransportRequest:
    """Serialize an envelope into a request under the envelope's category."""
    return TransportRequest(body=serialize_envelope(envelope), category=envelope.category)
