"""Envelope wire format, builders and attachments."""

from vigil.envelope.attachments import (
    Attachment,
    binary_attachment,
    json_attachment,
    text_attachment,
    validate_attachment,
    validate_attachments_size,
)
from vigil.envelope.builders import (
    add_attachment_to_envelope,
    create_client_report_envelope,
    create_event_envelope,
    create_session_envelope,
)
from vigil.envelope.codec import (
    Envelope,
    EnvelopeItem,
    get_envelope_size,
    parse_envelope,
    serialize_envelope,
    to_transport_request,
)

__all__ = [
    "Attachment",
    "Envelope",
    "EnvelopeItem",
    "add_attachment_to_envelope",
    "binary_attachment",
    "create_client_report_envelope",
    "create_event_envelope",
    "create_session_envelope",
    "get_envelope_size",
    "json_attachment",
    "parse_envelope",
    "serialize_envelope",
    "text_attachment",
    "to_transport_request",
    "validate_attachment",
    "validate_attachments_size",
]
