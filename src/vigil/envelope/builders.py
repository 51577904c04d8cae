# src/vigil/envelope/builders.py
"""Constructors for the envelopes Vigil sends.

Builders never mutate the event they are given; the item payload is a
shallow copy with event_id and timestamp filled in.
"""

import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from vigil.contracts.enums import ItemType
from vigil.core.dsn import Dsn
from vigil.envelope.attachments import (
    MAX_TOTAL_ATTACHMENTS_SIZE,
    Attachment,
    create_attachment_item,
    validate_attachment,
)
from vigil.envelope.codec import Envelope, EnvelopeItem
from vigil.tracing.propagation import generate_event_id

logger = structlog.get_logger(__name__)

_EVENT_ITEM_TYPES: Mapping[str, ItemType] = {
    "transaction": ItemType.TRANSACTION,
    "replay_event": ItemType.REPLAY_EVENT,
    "feedback": ItemType.FEEDBACK,
}


def rfc3339_now() -> str:
    """Current UTC time as RFC 3339 with millisecond precision and a Z suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _base_headers(dsn: Dsn | None, sdk: Mapping[str, Any] | None) -> dict[str, Any]:
    headers: dict[str, Any] = {"sent_at": rfc3339_now()}
    if sdk:
        headers["sdk"] = dict(sdk)
    if dsn is not None:
        headers["dsn"] = dsn.to_string()
    return headers


def _trace_header(
    event: Mapping[str, Any],
    dsn: Dsn | None,
    dsc: Mapping[str, str] | None,
) -> dict[str, Any] | None:
    if dsc:
        trace = dict(dsc)
        if dsn is not None:
            trace.setdefault("public_key", dsn.public_key)
        return trace

    contexts = event.get("contexts") or {}
    trace_context = contexts.get("trace") if isinstance(contexts, Mapping) else None
    if not isinstance(trace_context, Mapping) or "trace_id" not in trace_context:
        return None
    candidate = {
        "trace_id": trace_context["trace_id"],
        "public_key": dsn.public_key if dsn is not None else None,
        "release": event.get("release"),
        "environment": event.get("environment"),
        "transaction": event.get("transaction") if event.get("type") == "transaction" else None,
    }
    return {key: value for key, value in candidate.items() if value is not None}


def _accept_attachments(attachments: Iterable[Attachment]) -> list[EnvelopeItem]:
    items: list[EnvelopeItem] = []
    total = 0
    for attachment in attachments:
        result = validate_attachment(attachment)
        if not result.valid:
            logger.warning("Dropping invalid attachment", filename=attachment.filename, error=result.error)
            continue
        if total + result.size > MAX_TOTAL_ATTACHMENTS_SIZE:
            logger.warning(
                "Dropping attachment over total size limit",
                filename=attachment.filename,
                size=result.size,
                accepted_total=total,
            )
            continue
        total += result.size
        items.append(create_attachment_item(attachment))
    return items


def create_event_envelope(
    event: Mapping[str, Any],
    dsn: Dsn | None = None,
    *,
    sdk: Mapping[str, Any] | None = None,
    dsc: Mapping[str, str] | None = None,
    attachments: Iterable[Attachment] = (),
) -> Envelope:
    """Wrap an event (error, transaction, replay or feedback) in an envelope.

    Args:
        event: Event payload; ``type`` selects the item type
        dsn: Destination DSN, echoed in the envelope header when given
        sdk: SDK info for the envelope header (falls back to event["sdk"])
        dsc: Dynamic sampling context for the ``trace`` header. Without it,
            a trace header is derived from event["contexts"]["trace"].
        attachments: Attachments appended after the event item. Invalid or
            over-limit attachments are dropped with a warning.

    Returns:
        Envelope whose first item is the event.
    """
    event_id = event.get("event_id") or generate_event_id()
    timestamp = event.get("timestamp")
    if timestamp is None:
        timestamp = time.time()

    headers = _base_headers(dsn, sdk or event.get("sdk"))
    headers["event_id"] = event_id
    trace = _trace_header(event, dsn, dsc)
    if trace:
        headers["trace"] = trace

    item_type = _EVENT_ITEM_TYPES.get(str(event.get("type")), ItemType.EVENT)
    payload = {**event, "event_id": event_id, "timestamp": timestamp}
    items = [EnvelopeItem.create(item_type, payload), *_accept_attachments(attachments)]
    return Envelope(headers=headers, items=tuple(items))


def create_session_envelope(
    session: Mapping[str, Any],
    dsn: Dsn | None = None,
    *,
    sdk: Mapping[str, Any] | None = None,
) -> Envelope:
    """Envelope carrying one session update."""
    return Envelope(
        headers=_base_headers(dsn, sdk),
        items=(EnvelopeItem.create(ItemType.SESSION, dict(session)),),
    )


def create_client_report_envelope(
    report: Mapping[str, Any],
    dsn: Dsn | None = None,
    *,
    sdk: Mapping[str, Any] | None = None,
) -> Envelope:
    """Envelope carrying one client report (dropped-event summary)."""
    return Envelope(
        headers=_base_headers(dsn, sdk),
        items=(EnvelopeItem.create(ItemType.CLIENT_REPORT, dict(report)),),
    )


def add_attachment_to_envelope(envelope: Envelope, attachment: Attachment) -> Envelope:
    """Return a copy of ``envelope`` with the attachment appended."""
    return envelope.with_item(create_attachment_item(attachment))
