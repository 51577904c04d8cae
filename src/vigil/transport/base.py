# src/vigil/transport/base.py
"""Shared send/retry/flush machinery for network transports.

Subclasses implement a single network attempt (_perform). BaseTransport
wraps it with the delivery algorithm:

    1. closed            -> status 0 "Transport is closed"
    2. category limited  -> record ratelimit_backoff, synthetic 429, no I/O
    3. retry loop        -> per-attempt timeout (cancellation), rate limits
                            updated from every response, backoff between
                            attempts (see vigil.transport.retry)
    4. exhausted with status 0 -> record network_error

Delivery failures never raise out of send(). Callers inspect status_code.

Concurrency:
    Concurrent send() calls are independent; attempts for one call are
    strictly sequential. An in-flight counter and an asyncio.Event let
    flush() wait for every outstanding send to settle.
"""

import asyncio
import random as _random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import ClassVar

import structlog

from vigil.contracts.enums import DiscardReason
from vigil.contracts.transport import NO_STATUS, TransportRequest, TransportResponse
from vigil.core.fanout import best_effort
from vigil.errors import TransportError
from vigil.sampling.client_reports import ClientReportManager
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.retry import RetryConfig, SleepFn, build_retrying

logger = structlog.get_logger(__name__)

ResponseListener = Callable[[TransportRequest, TransportResponse], Awaitable[None] | None]

DEFAULT_TIMEOUT = 30.0


class BaseTransport(ABC):
    """Template for transports with rate limiting, retries and flush/close.

    Attributes:
        dropped_count: Sends that ended as a drop (rate limited or network
            error), whether or not an outcome was recorded for them.
    """

    _name: ClassVar[str]

    # Log aggregate metrics every N drops
    _LOG_INTERVAL = 100

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        client_reports: ClientReportManager | None = None,
        retry: RetryConfig | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: SleepFn = asyncio.sleep,
        random: Callable[[], float] = _random.random,
    ) -> None:
        """Initialize shared transport state.

        Args:
            rate_limiter: Process-wide rate limiter (shared, not owned)
            client_reports: Process-wide outcome accumulator (shared, not owned)
            retry: Retry policy; defaults to 3 attempts
            timeout: Per-attempt timeout in seconds
            sleep: Backoff sleep; injectable for tests
            random: Jitter source; injectable for tests

        Raises:
            ValueError: If timeout is not positive.
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        self._rate_limiter = rate_limiter
        self._client_reports = client_reports
        self._retry = retry or RetryConfig()
        self._timeout = timeout
        self._sleep = sleep
        self._random = random
        self._listeners: list[ResponseListener] = []
        self._closed = False
        self._released = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._dropped_count = 0
        self._last_logged_drop_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    def add_listener(self, listener: ResponseListener) -> None:
        """Register a callback invoked after every settled network attempt.

        Listener failures are logged and ignored.
        """
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _perform(self, request: TransportRequest) -> TransportResponse:
        """Make exactly one network attempt.

        Raises:
            TransportError: On connection failure. Timeouts are enforced by
                the caller through cancellation.
        """

    async def _release(self) -> None:
        """Free network resources once closed and idle."""

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _record_drop(self, reason: DiscardReason, request: TransportRequest) -> None:
        if self._client_reports is not None and request.record_outcomes:
            self._client_reports.record_outcome(reason, request.category)
        self._dropped_count += 1
        if self._dropped_count - self._last_logged_drop_count >= self._LOG_INTERVAL:
            logger.warning(
                "Transport dropping envelopes",
                transport=self.name,
                dropped_since_last_log=self._dropped_count - self._last_logged_drop_count,
                dropped_total=self._dropped_count,
                last_reason=str(reason),
            )
            self._last_logged_drop_count = self._dropped_count

    def _admit(self, request: TransportRequest) -> TransportResponse | None:
        """Apply the closed and rate-limit gates.

        Returns:
            The response to return without any I/O, or None to proceed.
        """
        if self._closed:
            return TransportResponse.no_response("Transport is closed")
        if self._rate_limiter.is_rate_limited(request.category):
            self._record_drop(DiscardReason.RATELIMIT_BACKOFF, request)
            return TransportResponse(status_code=429, reason="Rate limited")
        return None

    async def _attempt(self, request: TransportRequest) -> TransportResponse:
        """One bounded attempt, converted to a response and fed to the rate limiter."""
        try:
            async with asyncio.timeout(self._timeout):
                response = await self._perform(request)
        except TimeoutError:
            response = TransportResponse.no_response("Request timeout")
        except TransportError as e:
            response = TransportResponse.no_response(str(e) or "Network error")

        self._rate_limiter.update_limits(response.headers)
        if response.status_code == NO_STATUS:
            logger.debug("Transport attempt failed", transport=self.name, reason=response.reason)
        if self._listeners:
            await best_effort(self._listeners, request, response, label="transport_listener")
        return response

    def _begin(self) -> None:
        self._in_flight += 1
        self._idle.clear()

    async def _end(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()
            if self._closed:
                await self._release_once()

    async def send(self, request: TransportRequest) -> TransportResponse:
        """Deliver a request with rate limiting and retries.

        Never raises for delivery failures.
        """
        rejected = self._admit(request)
        if rejected is not None:
            return rejected

        self._begin()
        try:
            retrying = build_retrying(
                self._retry,
                self._rate_limiter,
                request.category,
                sleep=self._sleep,
                random=self._random,
            )
            response: TransportResponse = await retrying(self._attempt, request)
        finally:
            await self._end()

        if response.status_code == NO_STATUS:
            self._record_drop(DiscardReason.NETWORK_ERROR, request)
        return response

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def flush(self, timeout: float | None = None) -> bool:
        """Wait for in-flight sends to settle.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            True if nothing is in flight when this returns.
        """
        if self._in_flight == 0:
            return True
        try:
            async with asyncio.timeout(timeout):
                await self._idle.wait()
        except TimeoutError:
            logger.debug("Transport flush timed out", transport=self.name, in_flight=self._in_flight)
            return False
        return True

    async def close(self, timeout: float | None = None) -> bool:
        """Stop accepting sends, then flush.

        In-flight sends are not aborted. If they outlive the timeout, network
        resources are released when the last one settles.

        Returns:
            True if every in-flight send settled within the timeout.
        """
        self._closed = True
        settled = await self.flush(timeout)
        if settled:
            await self._release_once()
        return settled

    async def _release_once(self) -> None:
        if self._released:
            return
        self._released = True
        await self._release()
