# src/vigil/core/fanout.py
"""Best-effort fan-out over independent handlers.

Used wherever a list of caller-supplied callbacks must all be invoked and a
faulty one must not stop the rest: client-report senders, transport response
listeners, before_send hooks that only observe. Each failure is logged with
the handler name and discarded.
"""

import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class FanoutResult:
    """Summary of one fan-out.

    Attributes:
        succeeded: Handlers that returned normally
        failed: Handlers that raised
    """

    succeeded: int
    failed: int

    @property
    def all_failed(self) -> bool:
        return self.failed > 0 and self.succeeded == 0


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__


async def best_effort(
    handlers: Iterable[Callable[..., Any]],
    *args: Any,
    label: str,
) -> FanoutResult:
    """Invoke every handler with ``*args``, isolating failures.

    Handlers may be plain callables or return awaitables; awaitables are
    awaited in order. Exceptions are logged and swallowed. Cancellation is
    never swallowed.

    Args:
        handlers: Callables to invoke
        *args: Positional arguments passed to every handler
        label: Short description of the fan-out used in log events

    Returns:
        Counts of handlers that succeeded and failed
    """
    succeeded = 0
    failed = 0
    for handler in tuple(handlers):
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            failed += 1
            logger.warning(
                "Best-effort handler failed",
                fanout=label,
                handler=_handler_name(handler),
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            succeeded += 1
    return FanoutResult(succeeded=succeeded, failed=failed)


def best_effort_sync(
    handlers: Iterable[Callable[..., Any]],
    *args: Any,
    label: str,
) -> FanoutResult:
    """Synchronous variant of best_effort for contexts without a running loop.

    Handlers returning awaitables are treated as failures, since there is
    nothing to await them with.
    """
    succeeded = 0
    failed = 0
    for handler in tuple(handlers):
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                # Close the coroutine so it does not warn about never being awaited
                close = getattr(result, "close", None)
                if close is not None:
                    close()
                raise TypeError("async handler used in synchronous fan-out")
        except Exception as e:
            failed += 1
            logger.warning(
                "Best-effort handler failed",
                fanout=label,
                handler=_handler_name(handler),
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            succeeded += 1
    return FanoutResult(succeeded=succeeded, failed=failed)
