# src/vigil/transport/beacon.py
"""Fire-and-forget transport for shutdown-time delivery.

send() queues a single background attempt and returns immediately with a
synthetic 200 "Beacon queued". There is no retry and no backoff. The rate
limiter is still consulted and drops are recorded exactly as for the other
transports. When the bounded in-flight quota is exhausted the request is
rejected with status 0 "Beacon queue full" and recorded as network_error.
"""

import asyncio
from typing import Any

import structlog

from vigil.contracts.enums import DiscardReason
from vigil.contracts.transport import NO_STATUS, TransportRequest, TransportResponse
from vigil.transport.http import HttpTransport

logger = structlog.get_logger(__name__)


class BeaconTransport(HttpTransport):
    """Single-attempt background delivery over httpx."""

    _name = "beacon"

    def __init__(self, url: str, *, max_in_flight: int = 64, **kwargs: Any) -> None:
        """Initialize the transport.

        Args:
            url: Envelope endpoint URL
            max_in_flight: Queued beacons accepted before rejecting new ones
            **kwargs: Passed to HttpTransport

        Raises:
            ValueError: If max_in_flight < 1.
        """
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        super().__init__(url, **kwargs)
        self._max_in_flight = max_in_flight
        self._pending: set[asyncio.Task[TransportResponse]] = set()

    async def send(self, request: TransportRequest) -> TransportResponse:
        rejected = self._admit(request)
        if rejected is not None:
            return rejected

        if self._in_flight >= self._max_in_flight:
            self._record_drop(DiscardReason.NETWORK_ERROR, request)
            return TransportResponse(status_code=NO_STATUS, reason="Beacon queue full")

        self._begin()
        task = asyncio.get_running_loop().create_task(self._deliver(request), name="vigil-beacon")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return TransportResponse(status_code=200, reason="Beacon queued")

    async def _deliver(self, request: TransportRequest) -> TransportResponse:
        try:
            response = await self._attempt(request)
        finally:
            await self._end()
        if not response.ok:
            # The caller already got "queued"; a late failure is only logged
            logger.debug(
                "Beacon delivery failed",
                status_code=response.status_code,
                reason=response.reason,
                category=str(request.category),
            )
        return response
