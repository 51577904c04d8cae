"""Distributed-trace correlation: identifiers, traceparent and baggage headers."""

from vigil.tracing.propagation import (
    PropagationContext,
    child_propagation_context,
    extract_propagation_context,
    generate_span_id,
    generate_trace_id,
    inject_propagation_context,
    new_propagation_context,
    parse_baggage,
    parse_traceparent,
    serialize_baggage,
    serialize_traceparent,
)

__all__ = [
    "PropagationContext",
    "child_propagation_context",
    "extract_propagation_context",
    "generate_span_id",
    "generate_trace_id",
    "inject_propagation_context",
    "new_propagation_context",
    "parse_baggage",
    "parse_traceparent",
    "serialize_baggage",
    "serialize_traceparent",
]
