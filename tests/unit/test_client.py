# tests/unit/test_client.py
"""Tests for the Client capture pipeline and lifecycle."""

import asyncio
from typing import Any

import httpx
import pytest
import respx

from tests.helpers import TEST_DSN, TEST_ENVELOPE_URL, RecordingTransport
from vigil.contracts.enums import DataCategory, DiscardReason
from vigil.contracts.transport import TransportRequest, TransportResponse
from vigil.core.config import VigilSettings
from vigil.envelope.codec import Envelope, parse_envelope
from vigil.tracing.propagation import PropagationContext
from vigil.transport.http import HttpTransport
from vigil.transport.offline import OfflineQueue

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"


def _settings(**overrides: Any) -> VigilSettings:
    values: dict[str, Any] = {"dsn": TEST_DSN, "environment": "test", "release": "app@1.0"}
    values.update(overrides)
    return VigilSettings(**values)


def _client(transport: RecordingTransport | None = None, **kwargs: Any) -> Any:
    from vigil.client import Client

    settings = kwargs.pop("settings", None) or _settings()
    return Client(settings, transport=transport or RecordingTransport(), **kwargs)


def _envelopes(transport: RecordingTransport) -> list[Envelope]:
    return [parse_envelope(request.body) for request in transport.sent]


def _outcomes(client: Any) -> dict[tuple[str, str], int]:
    return {(str(o.reason), str(o.category)): o.quantity for o in client.client_reports.pending_outcomes()}


class TestExceptionValues:
    def test_chain_runs_root_cause_first(self) -> None:
        from vigil.client import exception_values

        try:
            try:
                raise KeyError("missing")
            except KeyError as e:
                raise RuntimeError("lookup failed") from e
        except RuntimeError as e:
            values = exception_values(e)

        assert [v["type"] for v in values] == ["KeyError", "RuntimeError"]
        assert values[1]["value"] == "lookup failed"
        assert values[1]["stacktrace"]["frames"][0]["function"] == "test_chain_runs_root_cause_first"

    def test_suppressed_context_is_omitted(self) -> None:
        from vigil.client import exception_values

        try:
            try:
                raise KeyError("missing")
            except KeyError:
                raise ValueError("clean") from None
        except ValueError as e:
            values = exception_values(e)

        assert [v["type"] for v in values] == ["ValueError"]


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_message_sends_event_envelope(self) -> None:
        transport = RecordingTransport()
        client = _client(transport)

        event_id = await client.capture_message("hello", level="warning")

        [envelope] = _envelopes(transport)
        payload = envelope.items[0].json()
        assert envelope.headers["event_id"] == event_id
        assert envelope.headers["dsn"] == TEST_DSN
        assert envelope.headers["sdk"]["name"] == "vigil.python"
        assert payload["message"] == {"formatted": "hello"}
        assert payload["level"] == "warning"
        assert payload["environment"] == "test"
        assert payload["release"] == "app@1.0"
        assert payload["platform"] == "python"
        assert transport.sent[0].category is DataCategory.ERROR

    @pytest.mark.asyncio
    async def test_capture_exception_uses_current_exception(self) -> None:
        transport = RecordingTransport()
        client = _client(transport)

        try:
            raise ZeroDivisionError("division by zero")
        except ZeroDivisionError:
            await client.capture_exception()

        payload = _envelopes(transport)[0].items[0].json()
        assert payload["exception"]["values"][-1]["type"] == "ZeroDivisionError"
        assert payload["level"] == "error"

    @pytest.mark.asyncio
    async def test_capture_exception_outside_handler_raises(self) -> None:
        with pytest.raises(ValueError, match="without an exception"):
            await _client().capture_exception()

    @pytest.mark.asyncio
    async def test_explicit_event_id_is_kept(self) -> None:
        client = _client()

        assert await client.capture_event({"event_id": "a" * 32, "message": "x"}) == "a" * 32

    @pytest.mark.asyncio
    async def test_without_dsn_nothing_is_sent(self) -> None:
        from vigil.client import Client

        client = Client(VigilSettings())

        assert client.transport is None
        assert await client.capture_message("dropped on the floor") is not None
        assert await client.capture_session({"sid": "s1"}) is None

    @pytest.mark.asyncio
    async def test_error_context_is_attached(self) -> None:
        transport = RecordingTransport()
        context = PropagationContext(trace_id=TRACE_ID, span_id=SPAN_ID, parent_span_id="b7ad6b7169203331")

        await _client(transport).capture_message("traced", propagation_context=context)

        envelope = _envelopes(transport)[0]
        assert envelope.items[0].json()["contexts"]["trace"] == {
            "trace_id": TRACE_ID,
            "span_id": SPAN_ID,
            "parent_span_id": "b7ad6b7169203331",
        }
        assert envelope.headers["trace"]["trace_id"] == TRACE_ID

    @pytest.mark.asyncio
    async def test_caller_contexts_are_not_mutated(self) -> None:
        transport = RecordingTransport()
        contexts: dict[str, Any] = {"os": {"name": "linux"}}
        context = PropagationContext(trace_id=TRACE_ID, span_id=SPAN_ID)

        await _client(transport).capture_event(
            {"message": {"formatted": "traced"}, "contexts": contexts},
            propagation_context=context,
        )

        assert contexts == {"os": {"name": "linux"}}
        sent = _envelopes(transport)[0].items[0].json()["contexts"]
        assert sent["os"] == {"name": "linux"}
        assert sent["trace"]["trace_id"] == TRACE_ID

    @pytest.mark.asyncio
    async def test_session_is_sent_unsampled(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(sample_rate=0.0))

        response = await client.capture_session({"sid": "s1", "status": "ok"})

        assert response is not None and response.ok
        assert transport.sent[0].category is DataCategory.SESSION


class TestSampling:
    @pytest.mark.asyncio
    async def test_error_sampled_out_is_recorded(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(sample_rate=0.0))

        assert await client.capture_message("nope") is None
        assert transport.sent == []
        assert _outcomes(client) == {("sample_rate", "error"): 1}

    @pytest.mark.asyncio
    async def test_transaction_gets_dsc_with_decision(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(traces_sample_rate=0.5), random=lambda: 0.1)

        await client.capture_event({"type": "transaction", "transaction": "GET /users"})

        envelope = _envelopes(transport)[0]
        trace = envelope.headers["trace"]
        assert trace["public_key"] == "abc123"
        assert trace["transaction"] == "GET /users"
        assert trace["sampled"] == "true"
        assert trace["sample_rate"] == "0.5"
        assert envelope.items[0].type == "transaction"
        assert transport.sent[0].category is DataCategory.TRANSACTION

    @pytest.mark.asyncio
    async def test_parent_decision_wins(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(traces_sample_rate=1.0))
        parent = PropagationContext(trace_id=TRACE_ID, span_id=SPAN_ID, sampled=False)

        result = await client.capture_event({"type": "transaction", "transaction": "t"}, propagation_context=parent)

        assert result is None
        assert transport.sent == []
        assert _outcomes(client) == {("sample_rate", "transaction"): 1}


class TestHooks:
    @pytest.mark.asyncio
    async def test_processors_run_before_before_send(self) -> None:
        transport = RecordingTransport()
        order: list[str] = []

        def processor(event: dict[str, Any]) -> dict[str, Any]:
            order.append("processor")
            return {**event, "tags": {"processed": "yes"}}

        def before_send(event: dict[str, Any]) -> dict[str, Any]:
            order.append("before_send")
            assert event["tags"] == {"processed": "yes"}
            return event

        client = _client(transport, event_processors=[processor], before_send=[before_send])
        await client.capture_message("hooked")

        assert order == ["processor", "before_send"]
        assert _envelopes(transport)[0].items[0].json()["tags"] == {"processed": "yes"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("hook_kind", "reason"),
        [("event_processors", DiscardReason.EVENT_PROCESSOR), ("before_send", DiscardReason.BEFORE_SEND)],
    )
    async def test_hook_returning_none_drops(self, hook_kind: str, reason: DiscardReason) -> None:
        transport = RecordingTransport()
        client = _client(transport, **{hook_kind: [lambda event: None]})

        assert await client.capture_message("dropped") is None
        assert transport.sent == []
        assert _outcomes(client) == {(str(reason), "error"): 1}

    @pytest.mark.asyncio
    async def test_raising_hook_keeps_event(self) -> None:
        transport = RecordingTransport()

        def broken(event: dict[str, Any]) -> dict[str, Any]:
            raise RuntimeError("hook bug")

        client = _client(transport)
        client.add_before_send(broken)

        assert await client.capture_message("survives") is not None
        assert len(transport.sent) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_flush_delivers_client_report_through_transport(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(sample_rate=0.0))
        await client.capture_message("sampled out")

        assert await client.flush()

        [envelope] = _envelopes(transport)
        assert envelope.items[0].type == "client_report"
        assert envelope.items[0].json()["discarded_events"] == [
            {"reason": "sample_rate", "category": "error", "quantity": 1}
        ]
        assert transport.flushed == 1

    @pytest.mark.asyncio
    async def test_disabled_client_reports_are_not_sent(self) -> None:
        transport = RecordingTransport()
        client = _client(transport, settings=_settings(sample_rate=0.0, client_reports={"enabled": False}))
        await client.capture_message("sampled out")

        await client.flush()

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_context_manager_sends_final_report_then_closes(self) -> None:
        transport = RecordingTransport()

        async with _client(transport, settings=_settings(sample_rate=0.0)) as client:
            assert client.client_reports.is_running
            await client.capture_message("sampled out")

        assert transport.closed
        assert not client.client_reports.is_running
        assert _envelopes(transport)[0].items[0].type == "client_report"

    @pytest.mark.asyncio
    async def test_transport_built_from_settings(self) -> None:
        from vigil.client import Client

        client = Client(_settings(offline={"enabled": True}))

        assert isinstance(client.transport, OfflineQueue)
        assert isinstance(client.transport.transport, HttpTransport)
        await client.close(timeout=1.0)

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limited_client_report_records_no_outcome(self) -> None:
        from vigil.client import Client

        route = respx.post(TEST_ENVELOPE_URL).mock(return_value=httpx.Response(200))
        client = Client(_settings())
        client.rate_limiter.update_limits({"Retry-After": "60"})
        client.client_reports.record_outcome(DiscardReason.SAMPLE_RATE, DataCategory.ERROR)

        await client.flush()
        await client.flush()

        assert not route.called
        assert client.client_reports.pending_count == 0
        await client.close(timeout=1.0)

    @respx.mock
    @pytest.mark.asyncio
    async def test_failed_client_report_is_not_persisted(self) -> None:
        from vigil.client import Client

        route = respx.post(TEST_ENVELOPE_URL).mock(side_effect=httpx.ConnectError("refused"))
        client = Client(_settings(offline={"enabled": True}, transport={"retry": {"max_attempts": 1}}))
        client.client_reports.record_outcome(DiscardReason.SAMPLE_RATE, DataCategory.ERROR)

        await client.flush()

        assert route.call_count == 1
        assert len(client.transport) == 0
        assert client.client_reports.pending_count == 0
        await client.close(timeout=1.0)

    @pytest.mark.asyncio
    async def test_close_is_bounded_by_timeout(self) -> None:
        class StalledTransport(RecordingTransport):
            async def send(self, request: TransportRequest) -> TransportResponse:
                await asyncio.sleep(5)
                return await super().send(request)

        transport = StalledTransport()
        client = _client(transport, settings=_settings(sample_rate=0.0))
        await client.capture_message("sampled out")

        async with asyncio.timeout(1.0):
            closed = await client.close(timeout=0.1)

        assert closed is False
        assert transport.closed
        assert transport.sent == []
