# tests/unit/cli/test_cli.py
"""Tests for the vigil command line interface."""

import json
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from tests.helpers import TEST_DSN, TEST_ENVELOPE_URL
from vigil import __version__
from vigil.cli import app
from vigil.envelope.builders import create_event_envelope
from vigil.envelope.codec import serialize_envelope

runner = CliRunner()

TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


@pytest.fixture
def envelope_file(tmp_path: Path) -> Path:
    envelope = create_event_envelope({"event_id": "f" * 32, "message": "from disk", "level": "info"})
    path = tmp_path / "event.envelope"
    path.write_bytes(serialize_envelope(envelope))
    return path


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "vigil.yaml"
    path.write_text(f"dsn: {TEST_DSN}\ntransport:\n  timeout_seconds: 5\n  retry:\n    max_attempts: 1\n")
    return path


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"vigil version {__version__}" in result.output


class TestInspect:
    def test_console_summary(self, envelope_file: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "inspect", str(envelope_file)])

        assert result.exit_code == 0
        assert "1 item(s)" in result.output
        assert "Item 0: type=event category=error" in result.output
        assert '"ffffffffffffffffffffffffffffffff"' in result.output

    def test_json_summary(self, envelope_file: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "inspect", str(envelope_file), "--format", "json"])

        assert result.exit_code == 0
        summary = json.loads(result.output)
        assert summary["headers"]["event_id"] == "f" * 32
        assert summary["items"][0]["headers"]["type"] == "event"

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "inspect", str(tmp_path / "absent")])

        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_garbage_envelope(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.envelope"
        path.write_bytes(b"not json\n")

        result = runner.invoke(app, ["--no-dotenv", "inspect", str(path)])

        assert result.exit_code == 1
        assert "Invalid envelope" in result.output


class TestTraceparent:
    def test_prints_fields(self) -> None:
        result = runner.invoke(app, ["--no-dotenv", "traceparent", TRACEPARENT])

        assert result.exit_code == 0
        assert "trace_id: 4bf92f3577b34da6a3ce929d0e0e4736" in result.output
        assert "span_id: 00f067aa0ba902b7" in result.output
        assert "sampled: true" in result.output

    def test_invalid_header(self) -> None:
        result = runner.invoke(app, ["--no-dotenv", "traceparent", "ff-abc"])

        assert result.exit_code == 1
        assert "Invalid traceparent" in result.output


class TestSend:
    @respx.mock
    def test_sync_send(self, envelope_file: Path, settings_file: Path) -> None:
        route = respx.post(TEST_ENVELOPE_URL).mock(return_value=httpx.Response(200))

        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(settings_file), "--sync"])

        assert result.exit_code == 0, result.output
        assert "status: 200" in result.output
        request = route.calls.last.request
        assert "sentry_key=abc123" in request.headers["X-Sentry-Auth"]
        assert request.content == envelope_file.read_bytes()

    @respx.mock
    def test_transport_send_reports_attempts(self, envelope_file: Path, settings_file: Path) -> None:
        respx.post(TEST_ENVELOPE_URL).mock(return_value=httpx.Response(200))

        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(settings_file)])

        assert result.exit_code == 0, result.output
        assert "attempt: status=200" in result.output
        assert "status: 200" in result.output

    @respx.mock
    def test_rejected_envelope_exits_nonzero(self, envelope_file: Path, settings_file: Path) -> None:
        respx.post(TEST_ENVELOPE_URL).mock(return_value=httpx.Response(400))

        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(settings_file)])

        assert result.exit_code == 1
        assert "status: 400" in result.output

    def test_missing_dsn(self, envelope_file: Path, tmp_path: Path) -> None:
        settings = tmp_path / "vigil.yaml"
        settings.write_text("environment: test\n")

        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(settings)])

        assert result.exit_code == 1
        assert "No dsn configured" in result.output

    def test_invalid_settings(self, envelope_file: Path, tmp_path: Path) -> None:
        settings = tmp_path / "vigil.yaml"
        settings.write_text("sample_rate: 3\n")

        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(settings)])

        assert result.exit_code == 1
        assert "sample_rate" in result.output

    def test_missing_settings(self, envelope_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "send", str(envelope_file), "-s", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 1
        assert "Settings file not found" in result.output


class TestDotenv:
    def test_missing_env_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--env-file", str(tmp_path / "absent.env"), "traceparent", TRACEPARENT])

        assert result.exit_code == 1
        assert ".env file not found" in result.output
