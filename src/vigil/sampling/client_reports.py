# src/vigil/sampling/client_reports.py
"""Client report accounting: counts of events dropped before delivery.

Every component that discards an event (sampler, before_send filter,
transports, offline queue) calls record_outcome(). The counts are flushed
periodically as a client report and handed to the registered senders.

Accumulation epochs:
    flush() swaps the accumulator for an empty dict before anything can
    suspend. Outcomes recorded while senders run belong to the next report,
    so nothing is counted twice. A report whose sender fails is lost; it is
    never retried, to avoid reporting on the failure to report.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from vigil.contracts.enums import DataCategory, DiscardReason
from vigil.core.fanout import best_effort

logger = structlog.get_logger(__name__)

ReportSender = Callable[["ClientReport"], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class DiscardedEvents:
    reason: DiscardReason
    category: DataCategory
    quantity: int

    def to_dict(self) -> dict[str, Any]:
        return {"reason": str(self.reason), "category": str(self.category), "quantity": self.quantity}


@dataclass(frozen=True, slots=True)
class ClientReport:
    """One flushed report.

    Attributes:
        timestamp: Unix time (seconds, float) of the flush
        discarded_events: One entry per (reason, category) pair
    """

    timestamp: float
    discarded_events: tuple[DiscardedEvents, ...]

    @property
    def total_discarded(self) -> int:
        return sum(entry.quantity for entry in self.discarded_events)

    def to_payload(self) -> dict[str, Any]:
        """Wire payload of a ``client_report`` envelope item."""
        return {
            "timestamp": self.timestamp,
            "discarded_events": [entry.to_dict() for entry in self.discarded_events],
        }


def _outcomes(accumulator: dict[tuple[DiscardReason, DataCategory], int]) -> tuple[DiscardedEvents, ...]:
    return tuple(
        DiscardedEvents(reason=reason, category=category, quantity=quantity)
        for (reason, category), quantity in accumulator.items()
    )


class ClientReportManager:
    """Aggregates dropped-event outcomes and flushes them on a timer.

    One instance is shared by every sampler and transport in the process.

    Example:
        manager = ClientReportManager(send_report, flush_interval=60.0)
        manager.start()
        manager.record_outcome(DiscardReason.SAMPLE_RATE, DataCategory.ERROR)
        ...
        await manager.stop()  # final flush
    """

    def __init__(
        self,
        sender: ReportSender | None = None,
        *,
        flush_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            sender: Receives each non-empty report. May be sync or async.
            flush_interval: Seconds between periodic flushes.
            clock: Epoch-seconds clock used for report timestamps.

        Raises:
            ValueError: If flush_interval is not positive.
        """
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {flush_interval}")
        self._senders: list[ReportSender] = [sender] if sender is not None else []
        self._flush_interval = flush_interval
        self._clock = clock
        self._outcomes: dict[tuple[DiscardReason, DataCategory], int] = {}
        self._task: asyncio.Task[None] | None = None
        self._last_flush = clock()
        self._reports_sent = 0
        self._reports_failed = 0

    def add_sender(self, sender: ReportSender) -> None:
        self._senders.append(sender)

    def record_outcome(
        self,
        reason: DiscardReason,
        category: DataCategory,
        quantity: int = 1,
    ) -> None:
        """Count ``quantity`` dropped items under (reason, category).

        Raises:
            ValueError: If quantity is not positive.
        """
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        key = (reason, category)
        self._outcomes[key] = self._outcomes.get(key, 0) + quantity

    @property
    def pending_count(self) -> int:
        return sum(self._outcomes.values())

    def pending_outcomes(self) -> tuple[DiscardedEvents, ...]:
        return _outcomes(self._outcomes)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def seconds_since_last_flush(self) -> float:
        return self._clock() - self._last_flush

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @property
    def health_metrics(self) -> dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "reports_sent": self._reports_sent,
            "reports_failed": self._reports_failed,
            "is_running": self.is_running,
        }

    def take_report(self) -> ClientReport | None:
        """Atomically swap out the accumulator and build a report from it.

        Returns:
            The report, or None if nothing was recorded since the last flush.
        """
        self._last_flush = self._clock()
        if not self._outcomes:
            return None
        accumulated, self._outcomes = self._outcomes, {}
        return ClientReport(timestamp=self._last_flush, discarded_events=_outcomes(accumulated))

    async def flush(self) -> ClientReport | None:
        """Send everything recorded since the previous flush.

        Sender failures are logged and discarded; the accumulator is cleared
        either way.

        Returns:
            The report handed to the senders, or None if there was nothing to send.
        """
        report = self.take_report()
        if report is None:
            return None
        if not self._senders:
            logger.debug("Client report discarded, no sender registered", discarded=report.total_discarded)
            return report

        result = await best_effort(self._senders, report, label="client_report")
        if result.failed:
            self._reports_failed += 1
        else:
            self._reports_sent += 1
        logger.debug(
            "Client report flushed",
            discarded=report.total_discarded,
            outcomes=len(report.discarded_events),
            sender_failures=result.failed,
        )
        return report

    def start(self) -> None:
        """Start the periodic flush task on the running event loop.

        Calling start() on a running manager is a no-op.

        Raises:
            RuntimeError: If no event loop is running.
        """
        if self.is_running:
            return
        self._last_flush = self._clock()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="vigil-client-reports")

    async def stop(self) -> ClientReport | None:
        """Stop the periodic task and perform one final flush."""
        await self._cancel_task()
        return await self.flush()

    async def set_flush_interval(self, interval: float) -> None:
        """Change the interval, restarting the timer if it is running."""
        if interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {interval}")
        self._flush_interval = interval
        if self.is_running:
            await self._cancel_task()
            self.start()

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

