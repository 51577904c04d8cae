"""Transports: rate limiting, retrying delivery, offline persistence, batching."""

from vigil.transport.base import BaseTransport
from vigil.transport.beacon import BeaconTransport
from vigil.transport.composite import MultiplexTransport, NoopTransport
from vigil.transport.event_queue import EventPriority, EventQueue, QueuedEvent, event_priority
from vigil.transport.factory import create_transport, discover_transport_registry
from vigil.transport.http import HttpTransport
from vigil.transport.offline import OfflineQueue
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.retry import RetryConfig
from vigil.transport.store import FileStore, MemoryStore, OfflineStore, StoredRequest
from vigil.transport.stream import StreamTransport, send_sync

__all__ = [
    "BaseTransport",
    "BeaconTransport",
    "EventPriority",
    "EventQueue",
    "FileStore",
    "HttpTransport",
    "MemoryStore",
    "MultiplexTransport",
    "NoopTransport",
    "OfflineQueue",
    "OfflineStore",
    "QueuedEvent",
    "RateLimiter",
    "RetryConfig",
    "StoredRequest",
    "StreamTransport",
    "create_transport",
    "discover_transport_registry",
    "event_priority",
    "send_sync",
]
