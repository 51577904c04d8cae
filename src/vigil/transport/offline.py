# src/vigil/transport/offline.py
"""Offline queue: persist undeliverable envelopes and replay them later.

OfflineQueue wraps another transport and is itself a transport. A send whose
terminal outcome is not 2xx is persisted instead of being discarded. Replay
drains the store oldest first through the wrapped transport; an entry is
removed only after a 2xx.

Replay cycles:
    - Each entry is replayed at most once per cycle. Entries persisted while
      a cycle runs wait for the next one.
    - A cycle stops at the first entry that fails with a retryable outcome
      (no response, 429, 5xx except 500): the endpoint is unavailable and
      further attempts would only add load. Other failures (non-retryable
      4xx, 500) stay in the store and the cycle moves on.
    - Spacing between cycles doubles after each cycle that leaves entries
      behind, up to max_replay_interval, and resets once the store drains.
    - Entries older than max_age are discarded as network_error drops.
      Entries evicted while a cycle runs are skipped.

Outcome accounting:
    Requests go to the wrapped transport with outcome recording switched
    off, both on the first send and on every replay. A persisted envelope
    therefore yields exactly one discard outcome: queue_overflow if it is
    evicted, network_error if it expires. Failed replays record nothing.

Capacity:
    The store is bounded. Persisting into a full store evicts its oldest
    entry, recorded as a queue_overflow drop.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import replace

import structlog

from vigil.contracts.enums import DiscardReason
from vigil.contracts.transport import TransportProtocol, TransportRequest, TransportResponse
from vigil.sampling.client_reports import ClientReportManager
from vigil.transport.retry import SleepFn, is_retryable_status
from vigil.transport.store import OfflineStore, StoredRequest

logger = structlog.get_logger(__name__)


class OfflineQueue:
    """Transport wrapper that persists failed sends and replays them.

    Example:
        queue = OfflineQueue(HttpTransport(...), MemoryStore(30), client_reports=reports)
        queue.start()  # background replay loop
        await queue.send(request)
        ...
        await queue.close(timeout=2.0)
    """

    # Log aggregate metrics every N evictions
    _LOG_INTERVAL = 100

    def __init__(
        self,
        transport: TransportProtocol,
        store: OfflineStore,
        *,
        client_reports: ClientReportManager | None = None,
        replay_interval: float = 30.0,
        max_replay_interval: float = 600.0,
        max_age: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the queue.

        Args:
            transport: Wrapped transport (owned: closed by close())
            store: Persistence backend (owned)
            client_reports: Shared outcome accumulator
            replay_interval: Base seconds between replay cycles
            max_replay_interval: Cap for the backed-off interval
            max_age: Seconds after which a persisted entry is discarded
            clock: Epoch-seconds clock for entry ages and backoff
            sleep: Sleep used by the background loop

        Raises:
            ValueError: If intervals are not positive or out of order.
        """
        if replay_interval <= 0 or max_replay_interval <= 0 or max_age <= 0:
            raise ValueError("replay_interval, max_replay_interval and max_age must be > 0")
        if replay_interval > max_replay_interval:
            raise ValueError("replay_interval must not exceed max_replay_interval")
        self._transport = transport
        self._store = store
        self._client_reports = client_reports
        self._base_interval = replay_interval
        self._max_interval = max_replay_interval
        self._interval = replay_interval
        self._max_age = max_age
        self._clock = clock
        self._sleep = sleep
        self._closed = False
        self._replaying = False
        self._next_replay_at = 0.0
        self._loop_task: asyncio.Task[None] | None = None
        self._replay_tasks: set[asyncio.Task[int]] = set()
        self._evicted_count = 0
        self._last_logged_evicted = 0

    @property
    def name(self) -> str:
        return f"offline({self._transport.name})"

    @property
    def transport(self) -> TransportProtocol:
        return self._transport

    @property
    def store(self) -> OfflineStore:
        return self._store

    @property
    def replay_interval(self) -> float:
        """Current spacing between cycles, including backoff."""
        return self._interval

    @property
    def is_replaying(self) -> bool:
        return self._replaying

    def __len__(self) -> int:
        return len(self._store)

    # -------------------------------------------------------------------------
    # Send / persist
    # -------------------------------------------------------------------------

    async def send(self, request: TransportRequest) -> TransportResponse:
        """Send through the wrapped transport, persisting on failure.

        After a successful send, a replay is scheduled if entries are waiting
        and the inter-cycle backoff allows it.
        """
        if self._closed:
            return TransportResponse.no_response("Transport is closed")

        response = await self._transport.send(replace(request, record_outcomes=False))
        if response.ok:
            if len(self._store) and self._clock() >= self._next_replay_at:
                self._schedule_replay()
            return response

        self._persist(request)
        return response

    def _persist(self, request: TransportRequest) -> None:
        evicted = self._store.append(request, self._clock())
        logger.debug("Envelope persisted for replay", category=str(request.category), queued=len(self._store))
        if evicted is None:
            return
        if self._client_reports is not None:
            self._client_reports.record_outcome(DiscardReason.QUEUE_OVERFLOW, evicted.request.category)
        self._evicted_count += 1
        if self._evicted_count == 1 or self._evicted_count - self._last_logged_evicted >= self._LOG_INTERVAL:
            logger.warning(
                "Offline queue full, evicting oldest envelopes",
                evicted_since_last_log=self._evicted_count - self._last_logged_evicted,
                evicted_total=self._evicted_count,
                max_size=self._store.max_size,
            )
            self._last_logged_evicted = self._evicted_count

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def _is_expired(self, entry: StoredRequest, now: float) -> bool:
        return now - entry.created_at > self._max_age

    async def replay(self) -> int:
        """Run one replay cycle.

        Returns:
            Number of entries delivered. 0 if a cycle is already running.
        """
        if self._replaying:
            return 0
        self._replaying = True
        delivered = 0
        halted = False
        try:
            for entry in self._store.entries():
                if entry.key not in self._store:
                    # Evicted while this cycle was running
                    continue
                if self._is_expired(entry, self._clock()):
                    if self._store.remove(entry.key) and self._client_reports is not None:
                        self._client_reports.record_outcome(DiscardReason.NETWORK_ERROR, entry.request.category)
                    logger.debug("Discarding expired offline entry", key=entry.key, category=str(entry.request.category))
                    continue

                response = await self._transport.send(replace(entry.request, record_outcomes=False))
                if response.ok:
                    if self._store.remove(entry.key):
                        delivered += 1
                elif is_retryable_status(response.status_code):
                    halted = True
                    break
        finally:
            self._replaying = False
            self._after_cycle(halted)

        if delivered:
            logger.debug("Offline replay delivered envelopes", delivered=delivered, remaining=len(self._store))
        return delivered

    def _after_cycle(self, halted: bool) -> None:
        if len(self._store) == 0:
            self._interval = self._base_interval
        elif halted:
            self._interval = min(self._interval * 2, self._max_interval)
        self._next_replay_at = self._clock() + self._interval

    def _schedule_replay(self) -> None:
        if self._replaying or self._replay_tasks:
            return
        task = asyncio.get_running_loop().create_task(self.replay(), name="vigil-offline-replay")
        self._replay_tasks.add(task)
        task.add_done_callback(self._replay_tasks.discard)

    def start(self) -> None:
        """Start the background replay loop on the running event loop."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name="vigil-offline-loop")

    async def stop(self) -> None:
        """Stop the background loop (a cycle in progress is cancelled)."""
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            if len(self._store):
                await self.replay()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def flush(self, timeout: float | None = None) -> bool:
        """Run one replay cycle, then flush the wrapped transport.

        Returns:
            False if the timeout expired first.
        """
        try:
            async with asyncio.timeout(timeout):
                if self._replay_tasks:
                    await asyncio.gather(*self._replay_tasks, return_exceptions=True)
                if len(self._store) and not self._closed:
                    await self.replay()
                return await self._transport.flush()
        except TimeoutError:
            return False

    async def close(self, timeout: float | None = None) -> bool:
        """Stop replaying and close the wrapped transport.

        Entries still in the store stay there (a FileStore keeps them for the
        next process).
        """
        self._closed = True
        await self.stop()
        if self._replay_tasks:
            try:
                async with asyncio.timeout(timeout):
                    await asyncio.gather(*self._replay_tasks, return_exceptions=True)
            except TimeoutError:
                logger.debug("Offline replay still running at close", queued=len(self._store))
        return await self._transport.close(timeout)
