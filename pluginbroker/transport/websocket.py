"""WebSocket gateway: plugins connect to the host over WebSocket.

The ``Origin`` header of the opening handshake is the plugin's identity.
Connections whose origin is not registered are closed before any message
is read.
"""

from typing import Dict, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..core.logger import get_logger
from ..plugins.registry import PluginDescriptor
from ..protocol.errors import TransportClosed
from .base import PluginTransport

logger = get_logger(__name__)

# RFC 6455 "policy violation"
CLOSE_POLICY_VIOLATION = 1008


class WebSocketTransport(PluginTransport):
    """Transport for a plugin reached through :class:`WebSocketGateway`.

    The transport exists from registration on; it only becomes deliverable
    while the plugin has a live connection attached.
    """

    def __init__(self, origin: str):
        super().__init__(origin)
        self._connection: Optional[ServerConnection] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def is_open(self) -> bool:
        return super().is_open and self._connection is not None

    def attach(self, connection: ServerConnection) -> Optional[ServerConnection]:
        """Bind a new connection; returns the one it replaces, if any."""
        previous = self._connection
        self._connection = connection
        return previous

    def detach(self, connection: ServerConnection) -> None:
        if self._connection is connection:
            self._connection = None

    async def _deliver(self, payload: str) -> None:
        connection = self._connection
        if connection is None:
            raise TransportClosed(f"no connection for {self.origin}")
        try:
            await connection.send(payload)
        except ConnectionClosed as e:
            self.detach(connection)
            raise TransportClosed(f"connection for {self.origin} closed") from e

    async def close(self) -> None:
        await super().close()
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()


class WebSocketGateway:
    """WebSocket server feeding plugin messages into a broker."""

    def __init__(
        self,
        broker,
        host: str = "127.0.0.1",
        port: int = 8765,
        path: str = "/plugins",
        max_size: Optional[int] = None,
    ):
        """Initialize gateway.

        Args:
            broker: Broker receiving inbound messages
            host: Interface to listen on
            port: Port to listen on (0 picks a free port)
            path: Request path plugins must connect to
            max_size: Largest accepted message in bytes
        """
        self.broker = broker
        self.host = host
        self.port = port
        self.path = path.rstrip("/") or "/"
        self.max_size = max_size
        self._transports: Dict[str, WebSocketTransport] = {}
        self._server: Optional[Server] = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound (useful when started with port 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    def transport_for(self, origin: str) -> WebSocketTransport:
        """Get (or create) the transport for ``origin``."""
        transport = self._transports.get(origin)
        if transport is None or transport.closed:
            transport = WebSocketTransport(origin)
            self._transports[origin] = transport
        return transport

    def register(self, descriptor: PluginDescriptor) -> WebSocketTransport:
        """Register a plugin on the broker with a WebSocket transport."""
        transport = self.transport_for(descriptor.url)
        self.broker.register(descriptor, transport)
        return transport

    async def start(self) -> None:
        """Start listening."""
        if self._server is not None:
            logger.warning("WebSocket gateway already running")
            return

        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            max_size=self.max_size,
        )
        logger.info(
            "WebSocket gateway started",
            host=self.host,
            port=self.bound_port,
            path=self.path
        )

    async def stop(self) -> None:
        """Stop listening and close every plugin connection."""
        if self._server is None:
            return

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("WebSocket gateway stopped")

    async def _handle_connection(self, connection: ServerConnection) -> None:
        """Authenticate a connection by origin and pump its messages."""
        request_path = connection.request.path.split("?")[0].rstrip("/") or "/"
        if request_path != self.path:
            logger.warning("Invalid WebSocket path", path=request_path, expected=self.path)
            await connection.close(CLOSE_POLICY_VIOLATION, "invalid path")
            return

        origin = connection.request.headers.get("Origin")
        title = self.broker.registry.resolve(origin) if origin else None
        transport = self.broker.registry.lookup_transport(title) if title else None
        if not isinstance(transport, WebSocketTransport) or transport.origin != origin:
            logger.warning("Rejecting connection from untrusted origin", origin=origin)
            await connection.close(CLOSE_POLICY_VIOLATION, "untrusted origin")
            return

        previous = transport.attach(connection)
        if previous is not None:
            logger.info("Plugin reconnected, closing previous connection", plugin=title)
            await previous.close()

        logger.info("Plugin connected", plugin=title, origin=origin, remote=connection.remote_address)
        try:
            async for message in connection:
                await self.broker.on_message(origin, message)
        except ConnectionClosed:
            pass
        finally:
            transport.detach(connection)
            logger.info("Plugin disconnected", plugin=title, origin=origin)
