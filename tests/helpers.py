# tests/helpers.py
"""Test doubles shared across the suite.

- FakeClock: Manually advanced wall clock (seconds since epoch)
- RecordingSleep: Async sleep that records delays and advances a FakeClock
- ScriptedTransport: BaseTransport whose network attempts replay a script
- RecordingTransport: Minimal TransportProtocol that answers from a script
"""

from collections.abc import Iterable

from vigil.contracts.transport import TransportRequest, TransportResponse
from vigil.transport.base import BaseTransport
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.retry import RetryConfig

TEST_DSN = "https://abc123@o1.ingest.example.com/42"
TEST_ENVELOPE_URL = "https://o1.ingest.example.com/api/42/envelope/"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement: records each delay and advances the clock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


ScriptStep = TransportResponse | int | Exception


def _play(script: list[ScriptStep]) -> ScriptStep:
    # The last step repeats once the script runs out
    return script.pop(0) if len(script) > 1 else script[0]


class ScriptedTransport(BaseTransport):
    """Transport whose attempts return (or raise) scripted outcomes in order.

    Integers are shorthand for a response with that status code.
    """

    _name = "scripted"

    def __init__(self, script: Iterable[ScriptStep] = (200,), **kwargs: object) -> None:
        kwargs.setdefault("rate_limiter", RateLimiter())
        kwargs.setdefault("retry", RetryConfig(max_attempts=3, base_delay=1.0, max_delay=30.0))
        kwargs.setdefault("sleep", RecordingSleep())
        kwargs.setdefault("random", lambda: 0.5)
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.script = list(script)
        self.attempts: list[TransportRequest] = []
        self.released = 0

    async def _perform(self, request: TransportRequest) -> TransportResponse:
        self.attempts.append(request)
        step = _play(self.script)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return TransportResponse(status_code=step)
        return step

    async def _release(self) -> None:
        self.released += 1


class RecordingTransport:
    """Bare TransportProtocol implementation: no retries, no rate limiting."""

    name = "recording"

    def __init__(self, script: Iterable[ScriptStep] = (200,)) -> None:
        self.script = list(script)
        self.sent: list[TransportRequest] = []
        self.closed = False
        self.flushed = 0

    async def send(self, request: TransportRequest) -> TransportResponse:
        self.sent.append(request)
        step = _play(self.script)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return TransportResponse(status_code=step)
        return step

    async def flush(self, timeout: float | None = None) -> bool:
        self.flushed += 1
        return True

    async def close(self, timeout: float | None = None) -> bool:
        self.closed = True
        return True
