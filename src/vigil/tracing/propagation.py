# src/vigil/tracing/propagation.py
"""Propagation context: trace/span identifiers and their HTTP headers.

Header formats:
    traceparent:  {version:2hex}-{trace_id:32hex}-{span_id:16hex}-{flags:2hex}
    sentry-trace: {trace_id:32hex}-{span_id:16hex}[-{0|1}]
    baggage:      comma-separated key=value pairs; Vigil owns the ``sentry-``
                  entries (the dynamic sampling context) and leaves foreign
                  entries untouched.

Identifiers are hex strings. Parsing accepts either case and keeps the
caller's spelling; generation always produces lowercase.
"""

import re
import secrets
import uuid
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from urllib.parse import quote, unquote

_TRACEPARENT_PATTERN = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$", re.IGNORECASE)
_SENTRY_TRACE_PATTERN = re.compile(r"^([0-9a-f]{32})-([0-9a-f]{16})(?:-([01]))?$", re.IGNORECASE)
_TRACE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)
_SPAN_ID_PATTERN = re.compile(r"^[0-9a-f]{16}$", re.IGNORECASE)

_INVALID_VERSION = "ff"
_SENTRY_PREFIX = "sentry-"
# trace_id is the one DSC key written with a hyphen on the wire
_HYPHENATED_KEYS: Mapping[str, str] = MappingProxyType({"trace_id": "trace-id"})

TRACEPARENT_HEADER = "traceparent"
SENTRY_TRACE_HEADER = "sentry-trace"
BAGGAGE_HEADER = "baggage"

DynamicSamplingContext = Mapping[str, str]


@dataclass(frozen=True, slots=True)
class PropagationContext:
    """Trace correlation state for one logical operation.

    Attributes:
        trace_id: 32 hex chars, shared by every span in the trace
        span_id: 16 hex chars, unique to this operation
        parent_span_id: span_id of the operation that started this one
        sampled: Inherited sampling decision; None when undecided
        dsc: Dynamic sampling context (read-only snapshot)
    """

    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    sampled: bool | None = None
    dsc: DynamicSamplingContext | None = None

    def __post_init__(self) -> None:
        if self.dsc is not None and not isinstance(self.dsc, MappingProxyType):
            object.__setattr__(self, "dsc", MappingProxyType(dict(self.dsc)))

    def with_dsc(self, dsc: DynamicSamplingContext | None) -> "PropagationContext":
        return replace(self, dsc=dsc)

    def with_sampled(self, sampled: bool | None) -> "PropagationContext":
        return replace(self, sampled=sampled)


# =============================================================================
# Identifiers
# =============================================================================


def _random_hex(length: int) -> str:
    while True:
        value = secrets.token_hex(length // 2)
        if value.strip("0"):
            return value


def generate_trace_id() -> str:
    """Random 128-bit trace id as 32 lowercase hex chars (never all zero)."""
    return _random_hex(32)


def generate_span_id() -> str:
    """Random 64-bit span id as 16 lowercase hex chars (never all zero)."""
    return _random_hex(16)


def generate_event_id() -> str:
    return uuid.uuid4().hex


def is_valid_trace_id(value: str) -> bool:
    return bool(_TRACE_ID_PATTERN.match(value)) and value.strip("0") != ""


def is_valid_span_id(value: str) -> bool:
    return bool(_SPAN_ID_PATTERN.match(value)) and value.strip("0") != ""


def new_propagation_context() -> PropagationContext:
    """Start a new trace with no sampling decision."""
    return PropagationContext(trace_id=generate_trace_id(), span_id=generate_span_id())


def child_propagation_context(
    parent: PropagationContext,
    *,
    sampled: bool | None = None,
    dsc: DynamicSamplingContext | None = None,
) -> PropagationContext:
    """Derive the context for an operation started inside ``parent``.

    The child keeps the trace id, gets a fresh span id, records the parent's
    span id, and inherits sampled/dsc unless explicitly overridden.
    """
    return PropagationContext(
        trace_id=parent.trace_id,
        span_id=generate_span_id(),
        parent_span_id=parent.span_id,
        sampled=parent.sampled if sampled is None else sampled,
        dsc=parent.dsc if dsc is None else dsc,
    )


# =============================================================================
# traceparent / sentry-trace
# =============================================================================


def parse_traceparent(value: str) -> PropagationContext | None:
    """Parse a W3C traceparent header.

    Returns:
        Context with trace_id, span_id and sampled (flags bit 0), or None if
        the value is malformed, uses the reserved version ``ff``, or carries
        an all-zero trace or span id.
    """
    match = _TRACEPARENT_PATTERN.match(value.strip())
    if match is None:
        return None
    version, trace_id, span_id, flags = match.groups()
    if version.lower() == _INVALID_VERSION:
        return None
    if not trace_id.strip("0") or not span_id.strip("0"):
        return None
    return PropagationContext(trace_id=trace_id, span_id=span_id, sampled=bool(int(flags, 16) & 0x01))


def serialize_traceparent(context: PropagationContext) -> str:
    """Render a traceparent header.

    Version is always ``00``. Flags are ``01`` only when sampled is True; an
    undecided context serializes exactly like an unsampled one.
    """
    flags = "01" if context.sampled is True else "00"
    return f"00-{context.trace_id}-{context.span_id}-{flags}"


def parse_sentry_trace(value: str) -> PropagationContext | None:
    match = _SENTRY_TRACE_PATTERN.match(value.strip())
    if match is None:
        return None
    trace_id, span_id, sampled_flag = match.groups()
    if not trace_id.strip("0") or not span_id.strip("0"):
        return None
    sampled = None if sampled_flag is None else sampled_flag == "1"
    return PropagationContext(trace_id=trace_id, span_id=span_id, sampled=sampled)


def serialize_sentry_trace(context: PropagationContext) -> str:
    """Render a sentry-trace header; the sampled suffix is omitted when undecided."""
    header = f"{context.trace_id}-{context.span_id}"
    if context.sampled is None:
        return header
    return f"{header}-{'1' if context.sampled else '0'}"


# =============================================================================
# Baggage
# =============================================================================


def _dsc_key_from_baggage(key: str) -> str:
    # Accepts both sentry-trace-id and sentry-trace_id (and hyphenated forms of other keys)
    return key[len(_SENTRY_PREFIX) :].replace("-", "_")


def _baggage_key_from_dsc(key: str) -> str:
    return _SENTRY_PREFIX + _HYPHENATED_KEYS.get(key, key)


def parse_baggage(value: str) -> DynamicSamplingContext | None:
    """Extract the dynamic sampling context from a baggage header.

    Only ``sentry-`` entries are read; the prefix is stripped and values are
    percent-decoded. Entries without ``=`` or with an empty key or value are
    skipped.

    Returns:
        Read-only DSC mapping, or None if the header has no sentry entries.
    """
    dsc: dict[str, str] = {}
    for raw_item in value.split(","):
        item = raw_item.strip()
        key, sep, raw_value = item.partition("=")
        key = key.strip()
        raw_value = raw_value.strip()
        if not sep or not key or not raw_value:
            continue
        if not key.startswith(_SENTRY_PREFIX) or key == _SENTRY_PREFIX:
            continue
        dsc[_dsc_key_from_baggage(key)] = unquote(raw_value)
    return MappingProxyType(dsc) if dsc else None


def serialize_baggage(dsc: DynamicSamplingContext) -> str:
    """Render a DSC as ``sentry-`` baggage entries with percent-encoded values.

    Empty values are omitted.
    """
    return ",".join(
        f"{_baggage_key_from_dsc(key)}={quote(str(item), safe='')}" for key, item in dsc.items() if item is not None and item != ""
    )


def merge_baggage(existing: str | None, dsc: DynamicSamplingContext) -> str:
    """Replace the sentry entries of ``existing`` with ``dsc``, keeping foreign ones verbatim."""
    foreign: list[str] = []
    if existing:
        for raw_item in existing.split(","):
            item = raw_item.strip()
            if item and not item.startswith(_SENTRY_PREFIX):
                foreign.append(item)
    sentry_entries = serialize_baggage(dsc)
    return ",".join(part for part in (*foreign, sentry_entries) if part)


def create_dsc(trace_id: str, public_key: str, **extra: str | None) -> DynamicSamplingContext:
    """Build a DSC for a trace; None-valued extras are dropped."""
    dsc = {"trace_id": trace_id, "public_key": public_key}
    dsc.update({key: value for key, value in extra.items() if value is not None})
    return MappingProxyType(dsc)


# =============================================================================
# Header injection / extraction
# =============================================================================


def _find_header(headers: Mapping[str, str], name: str) -> tuple[str, str] | None:
    for key, value in headers.items():
        if key.lower() == name:
            return key, value
    return None


def inject_propagation_context(
    context: PropagationContext,
    headers: MutableMapping[str, str],
) -> MutableMapping[str, str]:
    """Write trace headers for an outgoing request into ``headers``.

    traceparent is always set. baggage is touched only when the context has a
    DSC: existing sentry entries are replaced and foreign entries preserved.
    Existing header names are matched case-insensitively and keep their
    spelling.

    Returns:
        The same ``headers`` mapping, for chaining.
    """
    found = _find_header(headers, TRACEPARENT_HEADER)
    headers[found[0] if found else TRACEPARENT_HEADER] = serialize_traceparent(context)

    if context.dsc is not None:
        found = _find_header(headers, BAGGAGE_HEADER)
        if found is None:
            headers[BAGGAGE_HEADER] = serialize_baggage(context.dsc)
        else:
            headers[found[0]] = merge_baggage(found[1], context.dsc)
    return headers


def extract_propagation_context(headers: Mapping[str, str]) -> PropagationContext | None:
    """Continue a trace from incoming request headers.

    traceparent is preferred; sentry-trace is used when traceparent is absent
    or invalid. A ``sampled`` entry in the baggage fills in the decision when
    the trace header carries none.

    Returns:
        The parsed context (with DSC when baggage has sentry entries), or None
        when no valid trace header is present.
    """
    context: PropagationContext | None = None
    found = _find_header(headers, TRACEPARENT_HEADER)
    if found is not None:
        context = parse_traceparent(found[1])
    if context is None:
        found = _find_header(headers, SENTRY_TRACE_HEADER)
        if found is not None:
            context = parse_sentry_trace(found[1])
    if context is None:
        return None

    found = _find_header(headers, BAGGAGE_HEADER)
    dsc = parse_baggage(found[1]) if found is not None else None
    if dsc is None:
        return context
    sampled = context.sampled
    if sampled is None and dsc.get("sampled") in ("true", "false"):
        sampled = dsc["sampled"] == "true"
    return replace(context, dsc=dsc, sampled=sampled)
