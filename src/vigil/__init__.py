"""
Vigil: event delivery and reliability core for Sentry-compatible telemetry.

Builds envelopes, samples and accounts for dropped events, honours server
rate limits, and delivers payloads through retrying transports with an
optional offline queue.
"""

__version__ = "0.4.0"

SDK_NAME = "vigil.python"
