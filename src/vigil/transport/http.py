# src/vigil/transport/http.py
"""HTTP transport on httpx.AsyncClient.

Posts the serialized envelope to the DSN's envelope endpoint. The shared
retry, rate-limit and flush behavior comes from BaseTransport.
"""

from collections.abc import Mapping
from typing import Any

import httpx

from vigil import SDK_NAME, __version__
from vigil.contracts.defaults import INTERNAL_DEFAULTS
from vigil.contracts.transport import TransportRequest, TransportResponse
from vigil.errors import TransportError
from vigil.transport.base import DEFAULT_TIMEOUT, BaseTransport

ENVELOPE_CONTENT_TYPE = str(INTERNAL_DEFAULTS["protocol"]["envelope_content_type"])
USER_AGENT = f"{SDK_NAME}/{__version__}"


def request_headers(request: TransportRequest, extra: Mapping[str, str]) -> dict[str, str]:
    """Headers for an envelope POST; caller headers override the defaults."""
    return {
        "Content-Type": request.content_type or ENVELOPE_CONTENT_TYPE,
        "User-Agent": USER_AGENT,
        **extra,
    }


class HttpTransport(BaseTransport):
    """Envelope transport over httpx.

    Example:
        transport = HttpTransport(
            dsn.envelope_endpoint,
            headers={"X-Sentry-Auth": auth_header(dsn)},
            rate_limiter=limiter,
            client_reports=reports,
        )
        response = await transport.send(to_transport_request(envelope))
    """

    _name = "http"

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        """Initialize the transport.

        Args:
            url: Envelope endpoint URL
            headers: Extra headers on every request (auth, tracing)
            client: Existing AsyncClient to use; the transport only closes
                clients it created itself.
            timeout: Per-attempt timeout in seconds
            **kwargs: Passed to BaseTransport (rate_limiter, client_reports, retry, ...)
        """
        super().__init__(timeout=timeout, **kwargs)
        self._url = url
        self._headers = dict(headers or {})
        self._owns_client = client is None
        # httpx timeout sits just above ours so cancellation wins the race
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout + 1.0))

    @property
    def url(self) -> str:
        return self._url

    async def _perform(self, request: TransportRequest) -> TransportResponse:
        try:
            response = await self._client.post(
                self._url,
                content=request.body,
                headers=request_headers(request, self._headers),
            )
        except httpx.TimeoutException as e:
            raise TransportError("Request timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e
        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            reason=response.reason_phrase,
        )

    async def _release(self) -> None:
        if self._owns_client:
            await self._client.aclose()
