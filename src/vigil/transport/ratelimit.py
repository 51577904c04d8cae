# src/vigil/transport/ratelimit.py
"""Server-driven rate-limit state.

Each category is either Open or Limited until an expiry timestamp. Windows
are opened only by update_limits() from response headers and close lazily:
a read at or after the expiry treats the category as open, and nothing ever
deletes entries except an explicit clear().

Header precedence:
    1. X-Sentry-Rate-Limits: ``retry_after:cat1;cat2:scope:reason[:namespaces], ...``
       An empty category list applies to the ``all`` scope.
    2. Retry-After (integer seconds or HTTP-date), applied to ``all``.

Reads consult ``all``, then the exact category, then ``default``.

One instance is shared by every transport in the process. All mutation is
synchronous, so under asyncio no update can interleave with another.
"""

import time
from collections.abc import Callable, Mapping
from datetime import UTC
from email.utils import parsedate_to_datetime

import structlog

from vigil.contracts.defaults import INTERNAL_DEFAULTS
from vigil.contracts.enums import DataCategory, category_from_rate_limit_name

logger = structlog.get_logger(__name__)

RATE_LIMITS_HEADER = "x-sentry-rate-limits"
RETRY_AFTER_HEADER = "retry-after"

_DEFAULT_DURATION = float(INTERNAL_DEFAULTS["rate_limit"]["default_duration_seconds"])


def _get_header(headers: Mapping[str, str | None], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class RateLimiter:
    """Per-category backoff windows derived from server responses.

    Example:
        limiter = RateLimiter()
        limiter.update_limits({"X-Sentry-Rate-Limits": "60:error:organization"})
        limiter.is_rate_limited(DataCategory.ERROR)  # True for the next 60s
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize with no active limits.

        Args:
            clock: Returns the current time in epoch seconds. Injectable so
                tests can move time without sleeping.
        """
        self._clock = clock
        self._limits: dict[DataCategory, float] = {}

    def disabled_until(self, category: DataCategory) -> float:
        """Epoch seconds until which ``category`` is blocked, or 0.0 if open."""
        now = self._clock()
        scopes = (DataCategory.ALL, category)
        if category is not DataCategory.DEFAULT:
            scopes = (*scopes, DataCategory.DEFAULT)
        for scope in scopes:
            expiry = self._limits.get(scope)
            if expiry is not None and now < expiry:
                return expiry
        return 0.0

    def is_rate_limited(self, category: DataCategory) -> bool:
        return self.disabled_until(category) > 0.0

    def get_remaining_time(self, category: DataCategory) -> float:
        """Seconds left in the active window for ``category`` (0.0 if open)."""
        until = self.disabled_until(category)
        if until == 0.0:
            return 0.0
        return max(0.0, until - self._clock())

    def update_limits(self, headers: Mapping[str, str | None]) -> bool:
        """Apply rate-limit headers from a response.

        Args:
            headers: Response headers; names are matched case-insensitively.

        Returns:
            True if any rate-limit header was present.
        """
        now = self._clock()

        rate_limits = _get_header(headers, RATE_LIMITS_HEADER)
        if rate_limits:
            self._parse_rate_limits(rate_limits, now)
            return True

        retry_after = _get_header(headers, RETRY_AFTER_HEADER)
        if retry_after:
            duration = self._parse_retry_after(retry_after, now)
            self._extend(DataCategory.ALL, now + duration)
            logger.debug("Rate limited via Retry-After", duration_seconds=duration)
            return True
        return False

    def snapshot(self) -> dict[DataCategory, float]:
        """Copy of the raw expiry map, including entries that have expired."""
        return dict(self._limits)

    def clear(self) -> None:
        self._limits.clear()

    def _extend(self, category: DataCategory, until: float) -> None:
        # Longer window wins; a grant never shortens an existing one
        if until > self._limits.get(category, 0.0):
            self._limits[category] = until

    def _parse_rate_limits(self, header: str, now: float) -> None:
        for grant in header.split(","):
            parts = grant.strip().split(":")
            try:
                retry_seconds = int(parts[0].strip())
            except ValueError:
                logger.debug("Ignoring malformed rate limit grant", grant=grant)
                continue
            if retry_seconds <= 0:
                continue

            until = now + retry_seconds
            categories = parts[1].strip() if len(parts) > 1 else ""
            if not categories:
                self._extend(DataCategory.ALL, until)
                continue

            for name in categories.split(";"):
                if not name.strip():
                    continue
                category = category_from_rate_limit_name(name)
                if category is None:
                    continue
                self._extend(category, until)
            logger.debug("Rate limit applied", categories=categories, retry_seconds=retry_seconds)

    @staticmethod
    def _parse_retry_after(value: str, now: float) -> float:
        """Seconds to wait from a Retry-After value.

        Unparseable values fall back to the default duration.
        """
        stripped = value.strip()
        try:
            return max(0.0, float(int(stripped)))
        except ValueError:
            pass
        try:
            retry_at = parsedate_to_datetime(stripped)
        except (TypeError, ValueError):
            return _DEFAULT_DURATION
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=UTC)
        return max(0.0, retry_at.timestamp() - now)
