# src/vigil/transport/factory.py
"""Build the configured transport stack from settings.

This module is the glue between VigilSettings and runtime transports:
1. Discover transport classes via pluggy hooks
2. Instantiate the one named by ``transport.kind``
3. Optionally wrap it in an OfflineQueue

Usage:
    limiter = RateLimiter()
    reports = ClientReportManager()
    transport = create_transport(settings, rate_limiter=limiter, client_reports=reports)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import pluggy
import structlog

from vigil.core.config import VigilSettings
from vigil.core.dsn import auth_header, parse_dsn
from vigil.errors import TransportConfigError
from vigil.sampling.client_reports import ClientReportManager
from vigil.transport.base import BaseTransport
from vigil.transport.beacon import BeaconTransport
from vigil.transport.hookspecs import PROJECT_NAME, BuiltinTransportsPlugin, VigilTransportSpec
from vigil.transport.offline import OfflineQueue
from vigil.transport.ratelimit import RateLimiter
from vigil.transport.retry import RetryConfig
from vigil.transport.store import FileStore, MemoryStore, OfflineStore

logger = structlog.get_logger(__name__)


def _resolve_transport_name(transport_class: type[BaseTransport]) -> str:
    """Read the registry name from a transport class.

    Raises:
        TransportConfigError: If the class has no usable ``_name``.
    """
    class_name = getattr(transport_class, "__name__", repr(transport_class))
    name = getattr(transport_class, "_name", None)
    if type(name) is not str or name == "":
        raise TransportConfigError(class_name, f"Transport class attribute _name must be a non-empty string, got {name!r}")
    return name


def discover_transport_registry(transport_plugins: Iterable[Any] = ()) -> dict[str, type[BaseTransport]]:
    """Discover transports via pluggy hooks.

    Registers the built-in transports plus any plugin objects provided by
    the caller, then calls every ``vigil_get_transports`` hook.

    Args:
        transport_plugins: Additional plugin objects implementing
            ``vigil_get_transports``.

    Returns:
        Mapping of transport name to transport class.

    Raises:
        TransportConfigError: If a plugin fails validation, a hook fails or
            returns something other than an iterable of classes, or two
            classes claim the same name.
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(VigilTransportSpec)

    for plugin in (BuiltinTransportsPlugin(), *transport_plugins):
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            if isinstance(e, pluggy.PluginValidationError):
                plugin_manager.unregister(plugin=plugin)
            raise TransportConfigError(
                "transport_plugins",
                f"Invalid transport plugin {type(plugin).__name__}: {e}",
            ) from e

    registry: dict[str, type[BaseTransport]] = {}
    for hook_impl in plugin_manager.hook.vigil_get_transports.get_hookimpls():
        plugin_name = type(hook_impl.plugin).__name__
        try:
            transports = hook_impl.function()
        except Exception as e:
            raise TransportConfigError(
                "transport_plugins",
                f"Transport plugin {plugin_name} failed in vigil_get_transports: {e}",
            ) from e
        if transports is None or isinstance(transports, (str, bytes)):
            raise TransportConfigError(
                "transport_plugins",
                f"vigil_get_transports in plugin {plugin_name} returned {type(transports).__name__}; "
                "expected iterable of transport classes",
            )

        for transport_class in transports:
            name = _resolve_transport_name(transport_class)
            if name in registry:
                raise TransportConfigError(
                    name,
                    f"Duplicate transport name '{name}' discovered: "
                    f"{registry[name].__name__} and {transport_class.__name__}",
                )
            registry[name] = transport_class

    return registry


def create_store(settings: VigilSettings) -> OfflineStore:
    offline = settings.offline
    if offline.directory is None:
        return MemoryStore(max_size=offline.max_size)
    return FileStore(offline.directory, max_size=offline.max_size)


def create_transport(
    settings: VigilSettings,
    *,
    rate_limiter: RateLimiter,
    client_reports: ClientReportManager | None = None,
    transport_plugins: Iterable[Any] = (),
    store: OfflineStore | None = None,
    **transport_options: Any,
) -> BaseTransport | OfflineQueue:
    """Create the transport described by settings.

    Args:
        settings: Validated settings; ``dsn`` must be set.
        rate_limiter: Shared rate limiter injected into the transport.
        client_reports: Shared outcome accumulator injected into the transport.
        transport_plugins: Extra plugin objects providing transports.
        store: Offline store to use instead of the configured one.
        **transport_options: Passed through to the transport constructor
            (e.g. ``client`` for a preconfigured httpx.AsyncClient).

    Returns:
        The transport, wrapped in an OfflineQueue when offline is enabled.

    Raises:
        TransportConfigError: If no DSN is configured or the kind is unknown.
    """
    if settings.dsn is None:
        raise TransportConfigError(str(settings.transport.kind), "A DSN is required to create a transport")

    registry = discover_transport_registry(transport_plugins)
    kind = str(settings.transport.kind)
    try:
        transport_class = registry[kind]
    except KeyError:
        raise TransportConfigError(kind, f"Unknown transport; available: {sorted(registry)}") from None

    dsn = parse_dsn(settings.dsn)
    headers: Mapping[str, str] = {"X-Sentry-Auth": auth_header(dsn), **settings.transport.headers}
    options: dict[str, Any] = {
        "headers": headers,
        "rate_limiter": rate_limiter,
        "client_reports": client_reports,
        "retry": RetryConfig.from_settings(settings.transport.retry),
        "timeout": settings.transport.timeout_seconds,
        **transport_options,
    }
    if issubclass(transport_class, BeaconTransport):
        options.setdefault("max_in_flight", settings.transport.beacon_max_in_flight)

    transport = transport_class(dsn.envelope_endpoint, **options)  # type: ignore[call-arg]
    logger.debug("Transport created", transport=transport.name, url=dsn.envelope_endpoint)

    if not settings.offline.enabled:
        return transport
    return OfflineQueue(
        transport,
        store or create_store(settings),
        client_reports=client_reports,
        replay_interval=settings.offline.replay_interval_seconds,
        max_replay_interval=settings.offline.max_replay_interval_seconds,
        max_age=settings.offline.max_age_seconds,
    )
