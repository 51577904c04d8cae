# src/vigil/transport/composite.py
"""Transports that wrap other transports, or none at all.

MultiplexTransport fans one request out to several transports at once and
reports a single response: the first 2xx if any transport accepted the
request, otherwise the first transport's answer. Each wrapped transport
applies its own rate limits and records its own drops.

NoopTransport answers every send with a status-0 failure and no I/O, for
configurations where nothing can deliver.
"""

import asyncio
from collections.abc import Iterable

import structlog

from vigil.contracts.transport import TransportProtocol, TransportRequest, TransportResponse

logger = structlog.get_logger(__name__)


class NoopTransport:
    """Transport that delivers nothing."""

    name = "noop"

    async def send(self, request: TransportRequest) -> TransportResponse:
        return TransportResponse.no_response("No transport available")

    async def flush(self, timeout: float | None = None) -> bool:
        return True

    async def close(self, timeout: float | None = None) -> bool:
        return True


class MultiplexTransport:
    """Sends every request to all wrapped transports concurrently.

    Example:
        transport = MultiplexTransport([primary, mirror])
        response = await transport.send(request)  # ok if either accepted it
    """

    def __init__(self, transports: Iterable[TransportProtocol]) -> None:
        self._transports = tuple(transports)

    @property
    def name(self) -> str:
        return f"multiplex({','.join(t.name for t in self._transports)})"

    @property
    def transports(self) -> tuple[TransportProtocol, ...]:
        return self._transports

    async def send(self, request: TransportRequest) -> TransportResponse:
        if not self._transports:
            return TransportResponse.no_response("No transports")
        results = await asyncio.gather(*(t.send(request) for t in self._transports), return_exceptions=True)

        responses: list[TransportResponse] = []
        for transport, result in zip(self._transports, results, strict=True):
            if isinstance(result, Exception):
                # send() should not raise; a plugin that does only loses its own delivery
                logger.warning("Multiplexed transport raised", transport=transport.name, error=str(result))
                responses.append(TransportResponse.no_response(str(result) or type(result).__name__))
            elif isinstance(result, BaseException):
                raise result
            else:
                responses.append(result)

        for response in responses:
            if response.ok:
                return response
        return responses[0]

    async def flush(self, timeout: float | None = None) -> bool:
        """Flush every wrapped transport; True only if all settled."""
        results = await asyncio.gather(*(t.flush(timeout) for t in self._transports))
        return all(results)

    async def close(self, timeout: float | None = None) -> bool:
        """Close every wrapped transport; True only if all settled."""
        results = await asyncio.gather(*(t.close(timeout) for t in self._transports))
        return all(results)
