# src/vigil/transport/event_queue.py
"""Priority queue that batches events and sends them on a timer.

Events wait in priority order (errors, then transactions, then everything
else) and are sent one envelope per event on each flush. Within a priority
level the order is first in, first out.

Overflow:
    The queue holds at most max_size events. Adding past that drops the
    lowest-priority event, newest first within its level, as queue_overflow.

Retries:
    A send that does not come back 2xx within flush_timeout puts the event
    back in the queue for the next flush. After max_attempts sends it is
    dropped: as ratelimit_backoff if the last answer was a 429, otherwise as
    network_error.

Outcome accounting:
    The queue records drops itself, both in its own dropped_counts and with
    the ClientReportManager when one is given. Requests are handed to the
    transport with outcome recording switched off so a drop is never
    counted twice.
"""

import asyncio
import bisect
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any

import structlog

from vigil.contracts.enums import DataCategory, DiscardReason
from vigil.contracts.transport import TransportProtocol, TransportResponse
from vigil.core.dsn import Dsn
from vigil.envelope.builders import create_event_envelope
from vigil.envelope.codec import to_transport_request
from vigil.sampling.client_reports import ClientReportManager

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class EventPriority(IntEnum):
    """Send order; lower values go first."""

    ERROR = 0
    TRANSACTION = 1
    NORMAL = 2
    LOW = 3


def event_priority(event: Mapping[str, Any]) -> EventPriority:
    """Priority inferred from the event payload."""
    exception = event.get("exception")
    values = exception.get("values") if isinstance(exception, Mapping) else None
    if values or event.get("level") in ("fatal", "error"):
        return EventPriority.ERROR
    if event.get("type") == "transaction":
        return EventPriority.TRANSACTION
    return EventPriority.NORMAL


def _category(event: Mapping[str, Any]) -> DataCategory:
    return DataCategory.TRANSACTION if event.get("type") == "transaction" else DataCategory.ERROR


@dataclass(slots=True)
class QueuedEvent:
    """An event waiting in the queue.

    Attributes:
        event: Event payload, wrapped in an envelope at send time
        priority: Position class in the queue
        queued_at: Unix time the event was first added
        attempts: Sends tried so far
    """

    event: Mapping[str, Any]
    priority: EventPriority
    queued_at: float
    attempts: int = 0


class EventQueue:
    """Batches events and sends them through a transport in priority order.

    Example:
        queue = EventQueue(transport, dsn, client_reports=reports)
        queue.start()
        queue.add({"level": "error", "message": {"formatted": "boom"}})
        ...
        await queue.close()
    """

    _LOG_INTERVAL = 100

    def __init__(
        self,
        transport: TransportProtocol,
        dsn: Dsn | None = None,
        *,
        max_size: int = 100,
        flush_interval: float = 5.0,
        flush_timeout: float = 30.0,
        max_attempts: int = 3,
        client_reports: ClientReportManager | None = None,
        sdk: Mapping[str, Any] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Configure the queue; call start() for timed flushes.

        Args:
            transport: Where envelopes are sent
            dsn: Destination DSN echoed in envelope headers
            max_size: Events held before the lowest-priority one is dropped
            flush_interval: Seconds between timed flushes
            flush_timeout: Seconds one send may take before it counts as failed
            max_attempts: Sends per event before it is dropped
            client_reports: Shared drop accounting
            sdk: SDK info for envelope headers
            clock: Wall clock used to stamp queued events
            sleep: Async sleep used by the flush timer

        Raises:
            ValueError: If a size, interval or attempt count is not positive.
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {flush_interval}")
        if flush_timeout <= 0:
            raise ValueError(f"flush_timeout must be > 0, got {flush_timeout}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._transport = transport
        self._dsn = dsn
        self._max_size = max_size
        self._flush_interval = flush_interval
        self._flush_timeout = flush_timeout
        self._max_attempts = max_attempts
        self._client_reports = client_reports
        self._sdk = sdk
        self._clock = clock
        self._sleep = sleep

        self._queue: list[QueuedEvent] = []
        self._flushing = False
        self._task: asyncio.Task[None] | None = None
        self._dropped: Counter[tuple[DiscardReason, DataCategory]] = Counter()
        self._last_logged_drop_total = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def pending(self) -> list[QueuedEvent]:
        """Snapshot of queued events in send order."""
        return list(self._queue)

    def dropped_counts(self) -> dict[tuple[DiscardReason, DataCategory], int]:
        return dict(self._dropped)

    def clear_dropped_counts(self) -> None:
        self._dropped.clear()
        self._last_logged_drop_total = 0

    # -------------------------------------------------------------------------
    # Queueing
    # -------------------------------------------------------------------------

    def add(self, event: Mapping[str, Any], priority: EventPriority | None = None) -> None:
        """Queue an event; its priority is inferred when not given."""
        if priority is None:
            priority = event_priority(event)
        self._push(QueuedEvent(event=event, priority=priority, queued_at=self._clock()))

    def _push(self, item: QueuedEvent) -> None:
        # insort_right keeps arrival order within a priority level
        bisect.insort_right(self._queue, item, key=lambda queued: queued.priority)
        while len(self._queue) > self._max_size:
            self._record_drop(self._queue.pop(), DiscardReason.QUEUE_OVERFLOW)

    def clear(self) -> None:
        """Drop everything queued, recording each event as queue_overflow."""
        dropped, self._queue = self._queue, []
        for item in dropped:
            self._record_drop(item, DiscardReason.QUEUE_OVERFLOW)

    def _record_drop(self, item: QueuedEvent, reason: DiscardReason) -> None:
        category = _category(item.event)
        self._dropped[(reason, category)] += 1
        if self._client_reports is not None:
            self._client_reports.record_outcome(reason, category)
        total = self._dropped.total()
        if total - self._last_logged_drop_total >= self._LOG_INTERVAL:
            logger.warning(
                "Event queue dropping events",
                dropped_since_last_log=total - self._last_logged_drop_total,
                dropped_total=total,
                last_reason=str(reason),
            )
            self._last_logged_drop_total = total

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def _send(self, item: QueuedEvent) -> TransportResponse:
        try:
            envelope = create_event_envelope(item.event, self._dsn, sdk=self._sdk)
            request = replace(to_transport_request(envelope), record_outcomes=False)
            async with asyncio.timeout(self._flush_timeout):
                return await self._transport.send(request)
        except TimeoutError:
            return TransportResponse.no_response("Flush timeout")
        except Exception as e:
            # Plugin transports may raise; the event is retried like any failure
            logger.warning("Event queue send raised", transport=self._transport.name, error=str(e))
            return TransportResponse.no_response(str(e) or type(e).__name__)

    async def flush(self) -> int:
        """Send every queued event once.

        A no-op while another flush runs. Events added during a flush wait
        for the next one, as do failed events with attempts left.

        Returns:
            Number of events delivered.
        """
        if self._flushing or not self._queue:
            return 0
        self._flushing = True
        batch, self._queue = self._queue, []
        unsent = deque(batch)
        delivered = 0
        try:
            while unsent:
                item = unsent[0]
                response = await self._send(item)
                unsent.popleft()
                if response.ok:
                    delivered += 1
                    continue
                item.attempts += 1
                if item.attempts < self._max_attempts:
                    self._push(item)
                elif response.status_code == 429:
                    self._record_drop(item, DiscardReason.RATELIMIT_BACKOFF)
                else:
                    self._record_drop(item, DiscardReason.NETWORK_ERROR)
        finally:
            # An interrupted flush puts back what it did not get to
            for item in unsent:
                self._push(item)
            self._flushing = False
        logger.debug("Event queue flushed", delivered=delivered, sent=len(batch), queued=len(self._queue))
        return delivered

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the flush timer on the running event loop. No-op if running."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="vigil-event-queue")

    async def stop(self) -> None:
        """Stop the flush timer. Queued events stay queued."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> int:
        """Stop the timer and make one last flush."""
        await self.stop()
        return await self.flush()

    async def _run(self) -> None:
        while True:
            await self._sleep(self._flush_interval)
            await self.flush()
