# src/vigil/transport/stream.py
"""Callback-driven transport on a raw asyncio stream.

Each attempt opens one connection and drives a single HTTP/1.1 exchange
through asyncio.Protocol callbacks. The exchange is an explicit state
machine with one completion future:

    IDLE --connection_made/write--> SENT --response head parsed--> SETTLED
      \\                               \\--connection lost / EOF--> SETTLED (error)

Only the response status line and headers are needed (status for the retry
decision, headers for rate limits), so the exchange settles as soon as the
head is complete and the connection is closed. Header parsing is done here,
independently of httpx.

send_sync() is a blocking single-attempt helper for process teardown, when
no event loop is available.
"""

import asyncio
import ssl
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

import httpx
import structlog

from vigil.contracts.transport import TransportRequest, TransportResponse
from vigil.errors import TransportError
from vigil.transport.base import DEFAULT_TIMEOUT, BaseTransport
from vigil.transport.http import request_headers

logger = structlog.get_logger(__name__)

_HEAD_TERMINATOR = b"\r\n\r\n"
# Responses with a larger head are treated as protocol errors
_MAX_HEAD_BYTES = 64 * 1024


class ExchangeState(StrEnum):
    IDLE = "idle"
    SENT = "sent"
    SETTLED = "settled"


def parse_raw_headers(raw: str) -> dict[str, str]:
    """Parse CRLF- or LF-separated ``Name: value`` lines.

    Names are lower-cased, repeated headers are joined with ", ", and lines
    without a colon are skipped.
    """
    headers: dict[str, str] = {}
    for line in raw.splitlines():
        name, sep, value = line.partition(":")
        name = name.strip().lower()
        if not sep or not name:
            continue
        value = value.strip()
        headers[name] = f"{headers[name]}, {value}" if name in headers else value
    return headers


def parse_response_head(head: bytes) -> TransportResponse:
    """Parse an HTTP/1.x status line plus header block.

    Raises:
        TransportError: If the status line is malformed.
    """
    text = head.decode("latin-1")
    status_line, _, header_block = text.partition("\r\n")
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
        raise TransportError(f"Malformed status line: {status_line[:80]!r}")
    reason = parts[2] if len(parts) == 3 else ""
    return TransportResponse(status_code=int(parts[1]), headers=parse_raw_headers(header_block), reason=reason)


class EnvelopeExchange(asyncio.Protocol):
    """One request/response exchange over a fresh connection."""

    def __init__(self, payload: bytes, completion: "asyncio.Future[TransportResponse]") -> None:
        self.state = ExchangeState.IDLE
        self._payload = payload
        self._completion = completion
        self._buffer = bytearray()
        self._transport: asyncio.Transport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        assert isinstance(transport, asyncio.Transport)
        self._transport = transport
        transport.write(self._payload)
        self.state = ExchangeState.SENT

    def data_received(self, data: bytes) -> None:
        if self.state is not ExchangeState.SENT:
            return
        self._buffer.extend(data)
        head_end = self._buffer.find(_HEAD_TERMINATOR)
        if head_end == -1:
            if len(self._buffer) > _MAX_HEAD_BYTES:
                self._fail(TransportError("Response head too large"))
            return
        try:
            response = parse_response_head(bytes(self._buffer[:head_end]))
        except TransportError as e:
            self._fail(e)
            return
        self._settle(response)

    def eof_received(self) -> bool | None:
        if self.state is ExchangeState.SENT:
            self._fail(TransportError("Connection closed before response"))
        return None

    def connection_lost(self, exc: Exception | None) -> None:
        if self.state is not ExchangeState.SETTLED:
            self._fail(TransportError(str(exc) if exc else "Connection lost"))

    def abort(self) -> None:
        """Tear down the connection without settling (used on cancellation)."""
        self.state = ExchangeState.SETTLED
        if self._transport is not None:
            self._transport.abort()

    def _settle(self, response: TransportResponse) -> None:
        self.state = ExchangeState.SETTLED
        if not self._completion.done():
            self._completion.set_result(response)
        if self._transport is not None:
            self._transport.close()

    def _fail(self, error: TransportError) -> None:
        self.state = ExchangeState.SETTLED
        if not self._completion.done():
            self._completion.set_exception(error)
        if self._transport is not None:
            self._transport.close()


class StreamTransport(BaseTransport):
    """Envelope transport that speaks HTTP/1.1 directly over asyncio streams."""

    _name = "stream"

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout, **kwargs)
        parsed = httpx.URL(url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"Unsupported URL scheme {parsed.scheme!r}")
        self._url = url
        self._host = parsed.host
        self._port = parsed.port or (443 if parsed.scheme == "https" else 80)
        self._target = parsed.raw_path.decode("ascii") or "/"
        self._host_header = parsed.host if parsed.port is None else f"{parsed.host}:{parsed.port}"
        self._ssl = (ssl_context or ssl.create_default_context()) if parsed.scheme == "https" else None
        self._headers = dict(headers or {})

    @property
    def url(self) -> str:
        return self._url

    def _encode_request(self, request: TransportRequest) -> bytes:
        headers = {
            "Host": self._host_header,
            **request_headers(request, self._headers),
            "Content-Length": str(len(request.body)),
            "Connection": "close",
        }
        head = f"POST {self._target} HTTP/1.1\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers.items()) + "\r\n"
        return head.encode("latin-1") + request.body

    async def _perform(self, request: TransportRequest) -> TransportResponse:
        loop = asyncio.get_running_loop()
        completion: asyncio.Future[TransportResponse] = loop.create_future()
        exchange = EnvelopeExchange(self._encode_request(request), completion)
        try:
            await loop.create_connection(
                lambda: exchange,
                self._host,
                self._port,
                ssl=self._ssl,
                server_hostname=self._host if self._ssl is not None else None,
            )
        except OSError as e:
            raise TransportError(f"Connection failed: {e}") from e

        try:
            return await completion
        finally:
            if exchange.state is not ExchangeState.SETTLED:
                exchange.abort()


def send_sync(
    url: str,
    body: bytes,
    *,
    headers: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> TransportResponse:
    """Blocking single attempt; for teardown paths without a running loop.

    No retries and no rate-limit bookkeeping. Network failures come back as
    a status 0 response.
    """
    request = TransportRequest(body=body)
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, content=body, headers=request_headers(request, headers or {}))
    except httpx.HTTPError as e:
        logger.debug("Synchronous send failed", url=url, error=str(e))
        return TransportResponse.no_response(str(e) or type(e).__name__)
    return TransportResponse(
        status_code=response.status_code,
        headers=dict(response.headers),
        reason=response.reason_phrase,
    )
