# src/vigil/core/logging.py
"""Structured logging configuration for Vigil.

Delivery failures are silent towards the host application; logging and the
optional debug hook are the only places they become visible.

Architecture:
    This module configures BOTH structlog and stdlib logging to emit
    consistent output (JSON or console). ProcessorFormatter routes stdlib
    log records through structlog's processor chain so that third-party
    loggers (httpx, httpcore) render in the same format.

    A caller-provided debug hook receives a copy of every structlog event
    dict before rendering. The hook runs through the best-effort fan-out, so
    a failing hook is logged once and never breaks logging itself.
"""

import logging
import sys
from collections.abc import Callable, Mapping
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from vigil.core.fanout import best_effort_sync

DebugHook = Callable[[Mapping[str, Any]], None]

# Third-party loggers that are excessively verbose at DEBUG level.
# Capped at WARNING even when Vigil runs in DEBUG mode.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "httpcore.connection",
    "httpcore.http11",
    "asyncio",
)

# Set while a debug hook runs so that its own failure log does not re-enter it
_in_debug_hook: ContextVar[bool] = ContextVar("vigil_in_debug_hook", default=False)


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Remove ProcessorFormatter bookkeeping fields from output."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _debug_hook_processor(hooks: tuple[DebugHook, ...]) -> Callable[..., dict[str, Any]]:
    """Build a processor that forwards a snapshot of each event to the hooks."""

    def processor(
        logger: logging.Logger | None,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        if _in_debug_hook.get():
            return event_dict
        token = _in_debug_hook.set(True)
        try:
            best_effort_sync(hooks, dict(event_dict), label="debug_hook")
        finally:
            _in_debug_hook.reset(token)
        return event_dict

    return processor


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    debug_hook: DebugHook | None = None,
) -> None:
    """Configure structlog and stdlib logging for Vigil.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        debug_hook: Optional callable receiving every structlog event dict
            (after level and timestamp are attached).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if debug_hook is not None:
        shared_processors.append(_debug_hook_processor((debug_hook,)))

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Disabled so tests can reconfigure logging
        cache_logger_on_first_use=False,
    )

    # Telemetry diagnostics go to stderr; stdout belongs to the host application
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Bound structlog logger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
