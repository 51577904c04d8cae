# src/vigil/client.py
"""Client: the composition root wiring sampler, reports and transport.

The process-wide services (RateLimiter, ClientReportManager, Sampler) are
created exactly once here and injected by reference into the transport
stack. Nothing in Vigil keeps module-level mutable singletons.

Event pipeline for capture_event():
    sample (error rate, or transaction decision honouring the parent)
    -> event processors -> before_send hooks
    -> envelope -> transport (or offline queue)

Every drop along the way is recorded with the shared ClientReportManager,
whose reports are delivered through the wrapped transport directly, never
through the offline queue.
"""

import asyncio
import sys
import traceback
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from types import TracebackType
from typing import Any

import structlog

from vigil import SDK_NAME, __version__
from vigil.contracts.enums import DataCategory, DiscardReason
from vigil.contracts.transport import TransportProtocol, TransportResponse
from vigil.core.config import VigilSettings
from vigil.core.dsn import Dsn, parse_dsn
from vigil.envelope.attachments import Attachment
from vigil.envelope.builders import (
    create_client_report_envelope,
    create_event_envelope,
    create_session_envelope,
)
from vigil.envelope.codec import to_transport_request
from vigil.sampling.client_reports import ClientReport, ClientReportManager
from vigil.sampling.sampler import Sampler, TracesSampler
from vigil.tracing.propagation import (
    PropagationContext,
    create_dsc,
    generate_event_id,
    new_propagation_context,
)
from vigil.transport.factory import create_transport
from vigil.transport.offline import OfflineQueue
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.store import OfflineStore

logger = structlog.get_logger(__name__)

Event = dict[str, Any]
EventHook = Callable[[Event], Event | None]

SDK_INFO: Mapping[str, str] = {"name": SDK_NAME, "version": __version__}


def _frames(tb: TracebackType | None) -> list[dict[str, Any]]:
    return [
        {
            "filename": frame.filename,
            "abs_path": frame.filename,
            "function": frame.name,
            "lineno": frame.lineno,
            "context_line": frame.line,
        }
        for frame in traceback.extract_tb(tb)
    ]


def exception_values(exc: BaseException) -> list[dict[str, Any]]:
    """Exception chain in Sentry order: root cause first, raised exception last."""
    values: list[dict[str, Any]] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        values.append(
            {
                "type": type(current).__name__,
                "value": str(current),
                "module": type(current).__module__,
                "stacktrace": {"frames": _frames(current.__traceback__)},
            }
        )
        current = current.__cause__ or (None if current.__suppress_context__ else current.__context__)
    values.reverse()
    return values


class Client:
    """Captures events and delivers them through the configured transport.

    Example:
        async with Client(load_settings(Path("vigil.yaml"))) as client:
            try:
                handle()
            except Exception as e:
                await client.capture_exception(e)
    """

    def __init__(
        self,
        settings: VigilSettings,
        *,
        transport: TransportProtocol | None = None,
        store: OfflineStore | None = None,
        traces_sampler: TracesSampler | None = None,
        before_send: Iterable[EventHook] = (),
        event_processors: Iterable[EventHook] = (),
        transport_plugins: Iterable[Any] = (),
        random: Callable[[], float] | None = None,
    ) -> None:
        """Build the service graph.

        Args:
            settings: Validated settings
            transport: Transport to use instead of building one from settings
            store: Offline store to use instead of the configured one
            traces_sampler: Per-transaction sampling function
            before_send: Hooks run last; returning None drops the event
            event_processors: Hooks run before before_send; returning None drops the event
            transport_plugins: Extra pluggy plugins providing transports
            random: Uniform [0, 1) source for sampling
        """
        self._settings = settings
        self._dsn: Dsn | None = parse_dsn(settings.dsn) if settings.dsn else None
        self.rate_limiter = RateLimiter()
        self.client_reports = ClientReportManager(flush_interval=settings.client_reports.flush_interval_seconds)
        self.sampler = Sampler(
            settings.sample_rate,
            settings.traces_sample_rate,
            traces_sampler,
            client_reports=self.client_reports,
            random=random,
        )
        if transport is None and self._dsn is not None:
            transport = create_transport(
                settings,
                rate_limiter=self.rate_limiter,
                client_reports=self.client_reports,
                transport_plugins=transport_plugins,
                store=store,
            )
        self.transport = transport
        if self.transport is not None and settings.client_reports.enabled:
            self.client_reports.add_sender(self._send_client_report)
        self._event_processors = list(event_processors)
        self._before_send = list(before_send)

    @property
    def dsn(self) -> Dsn | None:
        return self._dsn

    def add_event_processor(self, processor: EventHook) -> None:
        self._event_processors.append(processor)

    def add_before_send(self, hook: EventHook) -> None:
        self._before_send.append(hook)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic client reports and offline replay."""
        if self._settings.client_reports.enabled:
            self.client_reports.start()
        if isinstance(self.transport, OfflineQueue):
            self.transport.start()

    async def flush(self, timeout: float | None = None) -> bool:
        """Send pending client reports and wait for in-flight sends."""
        await self.client_reports.flush()
        if self.transport is None:
            return True
        return await self.transport.flush(timeout)

    async def close(self, timeout: float | None = None) -> bool:
        """Final client-report flush, then close the transport.

        Both steps share one deadline. On timeout the transport is closed
        without waiting for in-flight sends and False is returned.
        """
        try:
            async with asyncio.timeout(timeout):
                await self.client_reports.stop()
                if self.transport is None:
                    return True
                return await self.transport.close(timeout)
        except TimeoutError:
            logger.warning("Client close timed out", timeout=timeout)
            if self.transport is not None:
                await self.transport.close(0)
            return False

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close(timeout=2.0)

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def _prepare(self, event: Mapping[str, Any]) -> Event:
        prepared: Event = dict(event)
        prepared.setdefault("event_id", generate_event_id())
        prepared.setdefault("platform", "python")
        prepared.setdefault("sdk", dict(SDK_INFO))
        if self._settings.environment is not None:
            prepared.setdefault("environment", self._settings.environment)
        if self._settings.release is not None:
            prepared.setdefault("release", self._settings.release)
        return prepared

    def _run_hooks(self, event: Event, hooks: list[EventHook], reason: DiscardReason, category: DataCategory) -> Event | None:
        for hook in hooks:
            try:
                result = hook(event)
            except Exception as e:
                # A broken hook must not lose the event
                logger.warning("Event hook raised, keeping event", hook=getattr(hook, "__qualname__", repr(hook)), error=str(e))
                continue
            if result is None:
                self.client_reports.record_outcome(reason, category)
                logger.debug("Event dropped by hook", reason=str(reason), event_id=event.get("event_id"))
                return None
            event = result
        return event

    def _dynamic_sampling_context(self, context: PropagationContext, event: Event) -> PropagationContext:
        if context.dsc is not None or self._dsn is None:
            return context
        return context.with_dsc(
            create_dsc(
                context.trace_id,
                self._dsn.public_key,
                release=event.get("release"),
                environment=event.get("environment"),
                transaction=event.get("transaction"),
            )
        )

    async def capture_event(
        self,
        event: Mapping[str, Any],
        *,
        propagation_context: PropagationContext | None = None,
        attachments: Iterable[Attachment] = (),
    ) -> str | None:
        """Sample, filter and send one event.

        Args:
            event: Event payload; ``type == "transaction"`` selects transaction sampling
            propagation_context: Trace the event belongs to; its ``sampled``
                flag is the parent decision for transactions
            attachments: Files sent in the same envelope

        Returns:
            The event id if the event was handed to the transport, None if it
            was dropped by sampling or a hook.
        """
        prepared = self._prepare(event)
        is_transaction = prepared.get("type") == "transaction"
        category = DataCategory.TRANSACTION if is_transaction else DataCategory.ERROR
        dsc = None

        if is_transaction:
            context = self._dynamic_sampling_context(propagation_context or new_propagation_context(), prepared)
            context, decision = self.sampler.sample_propagation_context(
                context,
                name=str(prepared.get("transaction") or ""),
            )
            if not decision.sampled:
                return None
            dsc = context.dsc
        else:
            if not self.sampler.should_sample_error():
                return None
            context = propagation_context
            dsc = context.dsc if context is not None else None

        if context is not None:
            trace = {"trace_id": context.trace_id, "span_id": context.span_id}
            if context.parent_span_id:
                trace["parent_span_id"] = context.parent_span_id
            contexts = dict(prepared.get("contexts") or {})
            contexts.setdefault("trace", trace)
            prepared["contexts"] = contexts

        processed = self._run_hooks(prepared, self._event_processors, DiscardReason.EVENT_PROCESSOR, category)
        if processed is None:
            return None
        processed = self._run_hooks(processed, self._before_send, DiscardReason.BEFORE_SEND, category)
        if processed is None:
            return None

        event_id = str(processed["event_id"])
        if self.transport is None:
            logger.debug("No transport configured, event not sent", event_id=event_id)
            return event_id

        envelope = create_event_envelope(processed, self._dsn, sdk=SDK_INFO, dsc=dsc, attachments=attachments)
        response = await self.transport.send(to_transport_request(envelope))
        if not response.ok:
            logger.debug("Event not delivered", event_id=event_id, status_code=response.status_code, reason=response.reason)
        return event_id

    async def capture_exception(
        self,
        error: BaseException | None = None,
        *,
        level: str = "error",
        **kwargs: Any,
    ) -> str | None:
        """Capture an exception (defaults to the one being handled).

        Extra keyword arguments are forwarded to capture_event().
        """
        if error is None:
            error = sys.exc_info()[1]
        if error is None:
            raise ValueError("capture_exception() called without an exception outside an except block")
        event: Event = {"level": level, "exception": {"values": exception_values(error)}}
        return await self.capture_event(event, **kwargs)

    async def capture_message(self, message: str, level: str = "info", **kwargs: Any) -> str | None:
        return await self.capture_event({"level": level, "message": {"formatted": message}}, **kwargs)

    async def capture_session(self, session: Mapping[str, Any]) -> TransportResponse | None:
        """Send a session update. Sessions are not sampled."""
        if self.transport is None:
            return None
        envelope = create_session_envelope(session, self._dsn, sdk=SDK_INFO)
        return await self.transport.send(to_transport_request(envelope))

    async def _send_client_report(self, report: ClientReport) -> None:
        # Reports are an accepted loss: they bypass the offline queue and
        # record no outcomes of their own
        transport = self.transport.transport if isinstance(self.transport, OfflineQueue) else self.transport
        if transport is None:
            return
        envelope = create_client_report_envelope(report.to_payload(), self._dsn, sdk=SDK_INFO)
        response = await transport.send(replace(to_transport_request(envelope), record_outcomes=False))
        if not response.ok:
            logger.debug("Client report not delivered", status_code=response.status_code)
