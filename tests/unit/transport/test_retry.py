# tests/unit/transport/test_retry.py
"""Tests for retry classification, backoff and the tenacity controller."""

import pytest

from tests.helpers import FakeClock, RecordingSleep
from vigil.contracts.enums import DataCategory
from vigil.contracts.transport import TransportResponse
from vigil.core.config import RetrySettings
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.retry import (
    RetryConfig,
    backoff_delay,
    build_retrying,
    is_retryable_status,
    should_retry,
)


class TestClassification:
    @pytest.mark.parametrize("status", [0, 429, 501, 502, 503, 504, 599])
    def test_retryable(self, status: int) -> None:
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [200, 202, 400, 401, 403, 413, 500])
    def test_not_retryable(self, status: int) -> None:
        assert not is_retryable_status(status)

    def test_should_retry_ignores_success(self) -> None:
        assert not should_retry(TransportResponse(status_code=200))
        assert should_retry(TransportResponse(status_code=503))


class TestRetryConfig:
    def test_defaults(self) -> None:
        config = RetryConfig()

        assert (config.max_attempts, config.base_delay, config.max_delay, config.jitter_ratio) == (3, 1.0, 30.0, 0.2)

    def test_no_retry(self) -> None:
        assert RetryConfig.no_retry().max_attempts == 1

    def test_from_settings(self) -> None:
        config = RetryConfig.from_settings(RetrySettings(max_attempts=5, initial_delay_seconds=0.5, max_delay_seconds=8))

        assert (config.max_attempts, config.base_delay, config.max_delay) == (5, 0.5, 8)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_delay": -1}, {"jitter_ratio": 1.0}],
    )
    def test_invalid(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)  # type: ignore[arg-type]


class TestBackoff:
    def test_doubles_without_jitter(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=100.0)

        assert [backoff_delay(n, config, lambda: 0.5) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_jitter_bounds(self) -> None:
        config = RetryConfig(base_delay=10.0, max_delay=100.0)

        assert backoff_delay(1, config, lambda: 0.0) == pytest.approx(8.0)
        assert backoff_delay(1, config, lambda: 0.999999) == pytest.approx(12.0, abs=1e-4)

    def test_capped(self) -> None:
        assert backoff_delay(10, RetryConfig(base_delay=1.0, max_delay=30.0), lambda: 0.99) == 30.0


class TestBuildRetrying:
    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        responses = [TransportResponse(status_code=503), TransportResponse(status_code=0), TransportResponse(status_code=200)]
        sleep = RecordingSleep()

        async def attempt() -> TransportResponse:
            return responses.pop(0)

        retrying = build_retrying(RetryConfig(), RateLimiter(), DataCategory.ERROR, sleep=sleep, random=lambda: 0.5)
        response = await retrying(attempt)

        assert response.status_code == 200
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_last_response(self) -> None:
        calls = 0

        async def attempt() -> TransportResponse:
            nonlocal calls
            calls += 1
            return TransportResponse(status_code=502, reason=f"try {calls}")

        retrying = build_retrying(RetryConfig(max_attempts=4), RateLimiter(), DataCategory.ERROR, sleep=RecordingSleep())
        response = await retrying(attempt)

        assert calls == 4
        assert response.reason == "try 4"

    @pytest.mark.asyncio
    async def test_waits_out_rate_limit_window(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        sleep = RecordingSleep(clock)
        responses = [TransportResponse(status_code=429, headers={"Retry-After": "7"}), TransportResponse(status_code=200)]

        async def attempt() -> TransportResponse:
            response = responses.pop(0)
            limiter.update_limits(response.headers)
            return response

        retrying = build_retrying(RetryConfig(), limiter, DataCategory.ERROR, sleep=sleep, random=lambda: 0.5)
        response = await retrying(attempt)

        assert response.ok
        assert sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_rate_limit_wait_is_capped(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        sleep = RecordingSleep(clock)

        async def attempt() -> TransportResponse:
            limiter.update_limits({"Retry-After": "3600"})
            return TransportResponse(status_code=429)

        retrying = build_retrying(RetryConfig(max_attempts=2, max_delay=30.0), limiter, DataCategory.ERROR, sleep=sleep)
        await retrying(attempt)

        assert sleep.delays == [30.0]
