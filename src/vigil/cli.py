# src/vigil/cli.py
"""Vigil Command Line Interface.

Entry point for the vigil CLI tool: envelope inspection, trace header
debugging and one-off delivery through the configured transport.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from vigil import __version__
from vigil.contracts.transport import TransportProtocol, TransportRequest, TransportResponse
from vigil.core.config import VigilSettings, load_settings
from vigil.core.dsn import auth_header, parse_dsn
from vigil.envelope.codec import parse_envelope, to_transport_request
from vigil.errors import EnvelopeParseError, TransportConfigError
from vigil.tracing.propagation import parse_traceparent

__all__ = ["app"]

app = typer.Typer(
    name="vigil",
    help="Vigil: event delivery tooling for Sentry-compatible ingestion.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"vigil version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Vigil: event delivery tooling for Sentry-compatible ingestion."""
    from vigil.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _read_envelope_file(path: Path) -> bytes:
    try:
        return path.expanduser().read_bytes()
    except FileNotFoundError:
        typer.echo(f"Error: File not found: {path}", err=True)
        raise typer.Exit(1) from None


def _load_settings_or_exit(settings: Path) -> VigilSettings:
    try:
        return load_settings(settings.expanduser())
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


@app.command()
def inspect(
    file: Path = typer.Argument(..., help="Serialized envelope file."),
    output_format: str = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Parse an envelope and print its header and items."""
    data = _read_envelope_file(file)
    try:
        envelope = parse_envelope(data)
    except EnvelopeParseError as e:
        typer.echo(f"Invalid envelope: {e}", err=True)
        raise typer.Exit(1) from None

    if output_format == "json":
        summary: dict[str, Any] = {
            "headers": dict(envelope.headers),
            "items": [{"headers": dict(item.headers), "size": len(item.payload)} for item in envelope.items],
        }
        typer.echo(json.dumps(summary, default=str))
        return

    typer.echo(f"Envelope: {len(data)} bytes, {len(envelope.items)} item(s)")
    for key, value in envelope.headers.items():
        typer.echo(f"  {key}: {json.dumps(value, default=str)}")
    for index, item in enumerate(envelope.items):
        typer.echo(f"Item {index}: type={item.type} category={item.category} size={len(item.payload)}")
        for key, value in item.headers.items():
            if key not in ("type", "length"):
                typer.echo(f"  {key}: {json.dumps(value, default=str)}")


@app.command()
def traceparent(
    value: str = typer.Argument(..., help="W3C traceparent header value."),
) -> None:
    """Parse a traceparent header and print its fields."""
    context = parse_traceparent(value)
    if context is None:
        typer.echo(f"Invalid traceparent: {value}", err=True)
        raise typer.Exit(1)
    typer.echo(f"trace_id: {context.trace_id}")
    typer.echo(f"span_id: {context.span_id}")
    typer.echo(f"sampled: {str(context.sampled).lower()}")


def _echo_attempt(request: TransportRequest, response: TransportResponse) -> None:
    typer.echo(f"attempt: status={response.status_code} reason={response.reason or '-'}", err=True)


async def _deliver(transport: TransportProtocol, request: TransportRequest, timeout: float) -> TransportResponse:
    try:
        return await transport.send(request)
    finally:
        await transport.close(timeout)


@app.command()
def send(
    file: Path = typer.Argument(..., help="Serialized envelope file."),
    settings: Path = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    sync: bool = typer.Option(
        False,
        "--sync",
        help="Single blocking attempt without retries or rate limiting.",
    ),
) -> None:
    """Deliver a serialized envelope through the configured transport."""
    from vigil.transport.base import BaseTransport
    from vigil.transport.factory import create_transport
    from vigil.transport.offline import OfflineQueue
    from vigil.transport.ratelimit import RateLimiter
    from vigil.transport.stream import send_sync

    config = _load_settings_or_exit(settings)
    if config.dsn is None:
        typer.echo("Error: No dsn configured; nothing to send to.", err=True)
        raise typer.Exit(1)

    try:
        request = to_transport_request(parse_envelope(_read_envelope_file(file)))
    except EnvelopeParseError as e:
        typer.echo(f"Invalid envelope: {e}", err=True)
        raise typer.Exit(1) from None

    if sync:
        dsn = parse_dsn(config.dsn)
        headers = {**config.transport.headers, "X-Sentry-Auth": auth_header(dsn)}
        response = send_sync(
            dsn.envelope_endpoint,
            request.body,
            headers=headers,
            timeout=config.transport.timeout_seconds,
        )
    else:
        try:
            transport = create_transport(config, rate_limiter=RateLimiter())
        except TransportConfigError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
        inner = transport.transport if isinstance(transport, OfflineQueue) else transport
        if isinstance(inner, BaseTransport):
            inner.add_listener(_echo_attempt)
        response = asyncio.run(_deliver(transport, request, config.transport.timeout_seconds))

    typer.echo(f"status: {response.status_code}")
    if response.reason:
        typer.echo(f"reason: {response.reason}")
    if not response.ok:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
