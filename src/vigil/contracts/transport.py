# src/vigil/contracts/transport.py
"""Transport request/response types and the transport protocol.

Every transport (HTTP, stream, beacon) and the offline queue wrapper speak
this contract. Responses are plain values: delivery failures are encoded in
status_code rather than raised.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from vigil.contracts.enums import DataCategory

# Status code used for "no HTTP response" (closed transport, network error, timeout)
NO_STATUS = 0


@dataclass(frozen=True, slots=True)
class TransportRequest:
    """A serialized envelope body plus the category it is rate-limited under.

    Attributes:
        body: Serialized envelope bytes, sent verbatim as the POST body
        category: Category consulted in the rate limiter and reported on drops
        content_type: Overrides the envelope content type when set
        record_outcomes: False when the caller accounts for the request's fate
            itself; the transport then records no discard outcomes for it
    """

    body: bytes
    category: DataCategory = DataCategory.DEFAULT
    content_type: str | None = None
    record_outcomes: bool = field(default=True, compare=False)


@dataclass(frozen=True, slots=True)
class TransportResponse:
    """Outcome of one send() call.

    Header names are lower-cased on construction so lookups are
    case-insensitive.

    Attributes:
        status_code: HTTP status, or 0 when no response was received
        headers: Response headers (lower-cased names)
        reason: Short human-readable explanation
    """

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", {k.lower(): v for k, v in self.headers.items()})

    @property
    def ok(self) -> bool:
        """True for any 2xx status."""
        return 200 <= self.status_code < 300

    @classmethod
    def no_response(cls, reason: str) -> "TransportResponse":
        """Response for attempts that never produced an HTTP status."""
        return cls(status_code=NO_STATUS, reason=reason)


@runtime_checkable
class TransportProtocol(Protocol):
    """Protocol for envelope transports.

    Lifecycle:
        1. Construction with shared RateLimiter / ClientReportManager
        2. send() called any number of times, possibly concurrently
        3. flush() waits for in-flight sends to settle
        4. close() stops accepting sends, then flushes

    Error handling:
        - send() MUST NOT raise for delivery failures - return a response
        - flush() and close() return False on timeout rather than raising
        - close() MUST be idempotent
    """

    @property
    def name(self) -> str:
        """Transport name used in settings (transport.kind)."""
        ...

    async def send(self, request: TransportRequest) -> TransportResponse:
        """Deliver one request, applying rate limits and retries."""
        ...

    async def flush(self, timeout: float | None = None) -> bool:
        """Wait for in-flight sends.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Returns:
            True if everything settled within the timeout
        """
        ...

    async def close(self, timeout: float | None = None) -> bool:
        """Reject further sends and flush what is in flight."""
        ...
