"""Sampling decisions and dropped-event accounting."""

from vigil.sampling.client_reports import ClientReport, ClientReportManager, DiscardedEvents
from vigil.sampling.sampler import (
    Sampler,
    SamplingContext,
    SamplingDecision,
    SamplingReason,
    SamplingStats,
    deterministic_sample,
)

__all__ = [
    "ClientReport",
    "ClientReportManager",
    "DiscardedEvents",
    "Sampler",
    "SamplingContext",
    "SamplingDecision",
    "SamplingReason",
    "SamplingStats",
    "deterministic_sample",
]
