# src/vigil/contracts/defaults.py
"""Internal defaults that are deliberately NOT exposed in VigilSettings.

User-tunable values (timeouts, attempt counts, queue sizes) live in
vigil.core.config. The values here are protocol constants or tuning knobs
that only change together with code.
"""

from typing import Final

INTERNAL_DEFAULTS: Final[dict[str, dict[str, int | float | str]]] = {
    "retry": {
        # Fraction of the computed backoff added or removed at random
        "jitter_ratio": 0.2,
    },
    "rate_limit": {
        # Applied when Retry-After is present but unparseable
        "default_duration_seconds": 60.0,
    },
    "attachments": {
        "max_attachment_size": 100 * 1024 * 1024,
        "max_total_size": 100 * 1024 * 1024,
        "default_content_type": "application/octet-stream",
        "default_attachment_type": "event.attachment",
    },
    "protocol": {
        "sentry_version": 7,
        "envelope_content_type": "application/x-sentry-envelope",
    },
}
