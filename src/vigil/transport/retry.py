# src/vigil/transport/retry.py
"""Retry policy for transport sends, built on tenacity.

The schedule for one send():
    attempt 1 -> (sleep) -> attempt 2 -> (sleep) -> ... up to max_attempts

Before each retry the transport sleeps either the remaining rate-limit
window for the request's category (if the previous response opened one) or
an exponential backoff ``base_delay * 2**(n-1)`` with +/- jitter, where n is
the number of attempts already made. Both are capped at max_delay.

Retryable outcomes:
    - status 0 (no response: connection error, timeout)
    - 429
    - 501..599

500 is deliberately NOT retried. Ingestion servers use a plain 500 for
requests they will never accept, while 502/503/504 come from proxies and
overload. Do not "fix" this asymmetry.
"""

import random as _random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt
from tenacity.wait import wait_base

from vigil.contracts.defaults import INTERNAL_DEFAULTS
from vigil.contracts.enums import DataCategory
from vigil.contracts.transport import NO_STATUS, TransportResponse
from vigil.transport.ratelimit import RateLimiter

if TYPE_CHECKING:
    from vigil.core.config import RetrySettings

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=3 means: try, retry, retry (3 total).
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    jitter_ratio: float = float(INTERNAL_DEFAULTS["retry"]["jitter_ratio"])

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        """Factory from RetrySettings config model.

        Args:
            settings: Validated Pydantic settings model

        Returns:
            RetryConfig with mapped values
        """
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
        )


def is_retryable_status(status_code: int) -> bool:
    """Whether a response status warrants another attempt."""
    if status_code == NO_STATUS or status_code == 429:
        return True
    return 501 <= status_code <= 599


def should_retry(response: TransportResponse) -> bool:
    return not response.ok and is_retryable_status(response.status_code)


def backoff_delay(
    attempts_made: int,
    config: RetryConfig,
    random: Callable[[], float] = _random.random,
) -> float:
    """Exponential backoff with symmetric jitter, capped at max_delay.

    Args:
        attempts_made: Attempts already performed (>= 1)
        config: Retry configuration
        random: Uniform [0, 1) source
    """
    delay = config.base_delay * 2 ** (attempts_made - 1)
    jitter = delay * config.jitter_ratio * (2 * random() - 1)
    return max(0.0, min(delay + jitter, config.max_delay))


class wait_backoff_or_rate_limit(wait_base):
    """tenacity wait strategy honouring an active rate-limit window.

    If the category is rate limited after the last response, wait out the
    remaining window; otherwise use backoff_delay(). Both are capped at
    max_delay.
    """

    def __init__(
        self,
        config: RetryConfig,
        rate_limiter: RateLimiter,
        category: DataCategory,
        random: Callable[[], float] = _random.random,
    ) -> None:
        self._config = config
        self._rate_limiter = rate_limiter
        self._category = category
        self._random = random

    def __call__(self, retry_state: RetryCallState) -> float:
        if self._rate_limiter.is_rate_limited(self._category):
            return min(self._rate_limiter.get_remaining_time(self._category), self._config.max_delay)
        return backoff_delay(retry_state.attempt_number, self._config, self._random)


def _last_result(retry_state: RetryCallState) -> TransportResponse:
    # Attempts never raise, so exhaustion always carries a response
    assert retry_state.outcome is not None
    response: TransportResponse = retry_state.outcome.result()
    return response


def build_retrying(
    config: RetryConfig,
    rate_limiter: RateLimiter,
    category: DataCategory,
    *,
    sleep: SleepFn,
    random: Callable[[], float] = _random.random,
) -> AsyncRetrying:
    """Build the AsyncRetrying controller for one send().

    On exhaustion the controller returns the final response instead of
    raising RetryError.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_backoff_or_rate_limit(config, rate_limiter, category, random),
        retry=retry_if_result(should_retry),
        retry_error_callback=_last_result,
        sleep=sleep,
    )
