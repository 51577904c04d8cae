# src/vigil/contracts/enums.py
"""Shared enumerations for the delivery pipeline.

These values appear on the wire (rate-limit headers, client reports), so the
string values are part of the protocol and must not be renamed.
"""

from enum import StrEnum


class DataCategory(StrEnum):
    """Coarse payload classification used for rate-limit scoping and reports.

    ALL is a synthetic scope that only appears in rate-limit state; it is
    never the category of an actual request.
    """

    DEFAULT = "default"
    ERROR = "error"
    TRANSACTION = "transaction"
    SESSION = "session"
    ATTACHMENT = "attachment"
    INTERNAL = "internal"
    REPLAY = "replay"
    ALL = "all"


class DiscardReason(StrEnum):
    """Why an event was dropped before delivery.

    Reported in client reports as discarded_events[].reason.
    """

    BEFORE_SEND = "before_send"
    EVENT_PROCESSOR = "event_processor"
    NETWORK_ERROR = "network_error"
    QUEUE_OVERFLOW = "queue_overflow"
    RATELIMIT_BACKOFF = "ratelimit_backoff"
    SAMPLE_RATE = "sample_rate"


class ItemType(StrEnum):
    """Envelope item types produced by this package.

    Parsing accepts any item type string; this enum only covers the ones
    Vigil itself builds.
    """

    EVENT = "event"
    TRANSACTION = "transaction"
    SESSION = "session"
    ATTACHMENT = "attachment"
    CLIENT_REPORT = "client_report"
    REPLAY_EVENT = "replay_event"
    REPLAY_RECORDING = "replay_recording"
    FEEDBACK = "feedback"
    LOG = "log"


class TransportKind(StrEnum):
    """Built-in transport implementations selectable from settings."""

    HTTP = "http"
    STREAM = "stream"
    BEACON = "beacon"


# Rate-limit grant category names, including server-side aliases.
_CATEGORY_ALIASES: dict[str, DataCategory] = {
    "default": DataCategory.DEFAULT,
    "error": DataCategory.ERROR,
    "transaction": DataCategory.TRANSACTION,
    "replay": DataCategory.REPLAY,
    "attachment": DataCategory.ATTACHMENT,
    "session": DataCategory.SESSION,
    "internal": DataCategory.INTERNAL,
    "event": DataCategory.ERROR,
    "span": DataCategory.TRANSACTION,
    "metric_bucket": DataCategory.INTERNAL,
}

_ITEM_CATEGORIES: dict[str, DataCategory] = {
    "event": DataCategory.ERROR,
    "feedback": DataCategory.ERROR,
    "transaction": DataCategory.TRANSACTION,
    "session": DataCategory.SESSION,
    "sessions": DataCategory.SESSION,
    "attachment": DataCategory.ATTACHMENT,
    "client_report": DataCategory.INTERNAL,
    "replay_event": DataCategory.REPLAY,
    "replay_recording": DataCategory.REPLAY,
}


def category_from_rate_limit_name(name: str) -> DataCategory | None:
    """Map a category name from an X-Sentry-Rate-Limits grant.

    Returns:
        The matching category, or None for names this client does not track.
    """
    return _CATEGORY_ALIASES.get(name.strip().lower())


def item_category(item_type: str | None) -> DataCategory:
    """Map an envelope item type to its rate-limit category.

    Unknown and missing item types fall back to DEFAULT.
    """
    if item_type is None:
        return DataCategory.DEFAULT
    return _ITEM_CATEGORIES.get(item_type, DataCategory.DEFAULT)
