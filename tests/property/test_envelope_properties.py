# tests/property/test_envelope_properties.py
"""Property-based tests for envelope framing.

ENVELOPE INVARIANTS:
1. parse(serialize(envelope)) restores headers, item order and payload bytes
2. Payloads may contain newlines and arbitrary bytes; ``length`` frames them
3. Serialized size is the sum of its lines plus separators
"""

from typing import Any

from hypothesis import given
from hypothesis import strategies as st

from tests.property.settings import CODEC_SETTINGS, STANDARD_SETTINGS
from vigil.envelope.codec import Envelope, EnvelopeItem, get_envelope_size, parse_envelope, serialize_envelope

header_values = st.none() | st.booleans() | st.integers(min_value=-(2**53 - 1), max_value=2**53 - 1) | st.text(max_size=40)

header_maps = st.dictionaries(st.text(min_size=1, max_size=20), header_values, max_size=5)

item_types = st.sampled_from(["event", "transaction", "attachment", "session", "client_report", "statsd"]) | st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=16
)


@st.composite
def items(draw: st.DrawFn) -> EnvelopeItem:
    extra = draw(header_maps)
    extra.pop("type", None)
    extra.pop("length", None)
    extra.pop("item_type", None)
    extra.pop("payload", None)
    return EnvelopeItem.create(draw(item_types), draw(st.binary(max_size=256)), **extra)


envelopes = st.builds(Envelope, headers=header_maps, items=st.lists(items(), max_size=5).map(tuple))


def _as_plain(envelope: Envelope) -> tuple[dict[str, Any], list[tuple[dict[str, Any], bytes]]]:
    return dict(envelope.headers), [(dict(item.headers), item.payload) for item in envelope.items]


@given(envelope=envelopes)
@CODEC_SETTINGS
def test_round_trip_preserves_everything(envelope: Envelope) -> None:
    parsed = parse_envelope(serialize_envelope(envelope))

    assert _as_plain(parsed) == _as_plain(envelope)


@given(envelope=envelopes)
@STANDARD_SETTINGS
def test_serialization_is_stable(envelope: Envelope) -> None:
    wire = serialize_envelope(envelope)

    assert serialize_envelope(parse_envelope(wire)) == wire
    assert get_envelope_size(envelope) == len(wire)


@given(payload=st.binary(max_size=64), newlines=st.integers(min_value=1, max_value=4))
@STANDARD_SETTINGS
def test_payload_newlines_do_not_split_items(payload: bytes, newlines: int) -> None:
    body = b"\n" * newlines + payload + b"\n" * newlines
    envelope = Envelope(headers={}, items=(EnvelopeItem.create("attachment", body), EnvelopeItem.create("event", b"{}")))

    parsed = parse_envelope(serialize_envelope(envelope))

    assert [item.payload for item in parsed.items] == [body, b"{}"]
