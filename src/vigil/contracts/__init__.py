"""Shared contracts: enums, transport types and protocols."""

from vigil.contracts.enums import (
    DataCategory,
    DiscardReason,
    ItemType,
    TransportKind,
    category_from_rate_limit_name,
    item_category,
)
from vigil.contracts.transport import (
    NO_STATUS,
    TransportProtocol,
    TransportRequest,
    TransportResponse,
)

__all__ = [
    "NO_STATUS",
    "DataCategory",
    "DiscardReason",
    "ItemType",
    "TransportKind",
    "TransportProtocol",
    "TransportRequest",
    "TransportResponse",
    "category_from_rate_limit_name",
    "item_category",
]
