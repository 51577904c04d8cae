# src/vigil/transport/hookspecs.py
"""Plugin hooks that map ``transport.kind`` names to transport classes.

Vigil ships the http, stream and beacon transports through the same hook a
third-party package uses, so a custom kind is just another registered
class. Names must be unique across all registered plugins; the registry
rejects duplicates when it is built.

A plugin that adds a ``"grpc"`` kind:
    from vigil.transport.hookspecs import hookimpl

    class GrpcTransportPlugin:
        @hookimpl
        def vigil_get_transports(self):
            return [GrpcTransport]  # GrpcTransport._name == "grpc"

and passes ``GrpcTransportPlugin()`` to ``Client(transport_plugins=...)``.
"""

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from vigil.transport.base import BaseTransport

PROJECT_NAME = "vigil"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)

hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class VigilTransportSpec:
    """The single hook a transport plugin implements."""

    @hookspec
    def vigil_get_transports(self) -> list[type["BaseTransport"]]:  # type: ignore[empty-body]
        """List the transport classes this plugin contributes.

        The factory instantiates the class whose ``_name`` equals the
        configured kind with ``(url, *, headers, rate_limiter,
        client_reports, retry, timeout)``; beacon-style classes may take
        extra keywords with defaults.

        Returns:
            Transport classes, not instances
        """


class BuiltinTransportsPlugin:
    """Contributes http, stream and beacon."""

    @hookimpl
    def vigil_get_transports(self) -> list[type["BaseTransport"]]:
        from vigil.transport.beacon import BeaconTransport
        from vigil.transport.http import HttpTransport
        from vigil.transport.stream import StreamTransport

        return [HttpTransport, StreamTransport, BeaconTransport]
