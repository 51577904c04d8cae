# src/vigil/errors.py
"""Vigil exception hierarchy.

Delivery failures are NOT exceptions. Transports absorb network errors and
surface them as a TransportResponse with status_code 0; rate-limit rejections
are a synthetic 429 response. Only malformed input (envelopes, DSNs) and
setup-time configuration problems are raised to the caller.
"""


class VigilError(Exception):
    """Base class for all Vigil errors."""


class ProtocolError(VigilError):
    """Raised when wire-format input violates the envelope protocol."""


class EnvelopeParseError(ProtocolError):
    """Raised when an envelope cannot be parsed.

    Attributes:
        offset: Byte offset in the input where parsing failed
    """

    def __init__(self, message: str, *, offset: int) -> None:
        self.offset = offset
        super().__init__(f"{message} (at byte {offset})")


class DsnParseError(VigilError, ValueError):
    """Raised for a DSN string that does not match the expected layout."""


class TransportError(VigilError):
    """Raised by a single network attempt on connection failure or timeout.

    Never escapes a transport's send(); the retry loop converts it into a
    status 0 response.
    """


class TransportConfigError(VigilError):
    """Raised when a transport cannot be discovered or configured.

    Attributes:
        transport_name: Name of the transport that failed
        message: Human-readable error description
    """

    def __init__(self, transport_name: str, message: str) -> None:
        self.transport_name = transport_name
        self.message = message
        super().__init__(f"Transport '{transport_name}' failed: {message}")
