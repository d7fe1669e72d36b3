"""Application lifecycle: one broker per host session."""

from typing import Optional

from .config import BrokerConfig, get_config
from .event_bus import EventBus
from .logger import get_logger, setup_logger
from ..plugins.endpoints import EndpointTable
from ..plugins.interceptor import InterceptorRegistry
from ..plugins.notifications import NotificationBus
from ..plugins.registry import PluginDescriptor
from ..router.broker import Broker
from ..transport.websocket import WebSocketGateway

logger = get_logger(__name__)


class BrokerApplication:
    """Wires config, logging, event bus, broker and notification bus."""

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        endpoints: Optional[EndpointTable] = None,
        interceptors: Optional[InterceptorRegistry] = None,
        configure_logging: bool = True,
    ):
        self.config = config or get_config()

        if configure_logging:
            setup_logger(
                name="pluginbroker",
                level=self.config.effective_log_level(),
                log_file=self.config.log_file,
                rich_console=self.config.rich_console,
            )

        self.event_bus = EventBus()
        self.broker = Broker(
            endpoints=endpoints,
            interceptors=interceptors,
            event_bus=self.event_bus,
            max_payload_bytes=self.config.max_payload_bytes,
        )
        self.notifications = NotificationBus(
            self.event_bus,
            self.broker,
            execution_provider=self.config.execution_provider,
        )
        self.gateway: Optional[WebSocketGateway] = None
        self._running = False

        logger.info(
            "Application initialized",
            app_name=self.config.app_name,
            environment=self.config.environment
        )

    @property
    def running(self) -> bool:
        return self._running

    async def startup(self) -> None:
        """Start the event bus and attach the notification bus."""
        if self._running:
            logger.warning("Application already running")
            return

        await self.event_bus.start()
        self.notifications.attach()
        self._running = True
        logger.info("Application started")

    async def start_gateway(self) -> WebSocketGateway:
        """Serve the WebSocket gateway for the configured plugins."""
        if self.gateway is None:
            self.gateway = WebSocketGateway(
                self.broker,
                host=self.config.ws_host,
                port=self.config.ws_port,
                path=self.config.ws_path,
                max_size=self.config.max_payload_bytes,
            )
            for entry in self.config.plugins:
                self.gateway.register(PluginDescriptor(title=entry.title, url=entry.url))

        await self.gateway.start()
        return self.gateway

    async def shutdown(self) -> None:
        """Stop accepting plugins, finish pending work and stop the bus."""
        if not self._running:
            return

        logger.info("Shutting down application")
        if self.gateway is not None:
            await self.gateway.stop()
        await self.broker.drain()
        self.notifications.detach()
        await self.event_bus.stop()
        self._running = False
        logger.info("Application stopped")

    async def __aenter__(self) -> "BrokerApplication":
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
