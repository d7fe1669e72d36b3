"""Host event taps forwarded to plugins."""

from typing import Callable, Dict, List, Optional, Tuple, Union

from ..core.event_bus import Event, EventBus
from ..core.logger import get_logger
from ..protocol.envelope import make_notification

logger = get_logger(__name__)

# Host event names
FILE_CHANGED = "editor.currentFileChanged"
COMPILATION_FINISHED = "compiler.compilationFinished"
NEW_TRANSACTION = "txlistener.newTransaction"
TAB_CHANGED = "app.tabChanged"

SIMULATED_PROVIDER = "vm"

# event name -> (notification key, notification type)
BROADCAST_EVENTS: Dict[str, Tuple[str, str]] = {
    FILE_CHANGED: ("editor", "currentFileChanged"),
    COMPILATION_FINISHED: ("compiler", "compilationFinished"),
    NEW_TRANSACTION: ("txlistener", "newTransaction"),
}


class NotificationBus:
    """Turns host events into plugin notifications.

    ``editor.currentFileChanged``, ``compiler.compilationFinished`` and
    ``txlistener.newTransaction`` are broadcast to every plugin (the last one
    only while the simulated ``vm`` execution provider is active);
    ``app.tabChanged`` moves the focus.
    """

    def __init__(
        self,
        event_bus: EventBus,
        broker,
        execution_provider: Union[str, Callable[[], str]] = SIMULATED_PROVIDER,
    ):
        """Initialize notification bus.

        Args:
            event_bus: Bus the host publishes its events on
            broker: Broker used for broadcast and focus changes
            execution_provider: Name of the active execution provider, or a
                callable returning it at event time
        """
        self.event_bus = event_bus
        self.broker = broker
        self._execution_provider = execution_provider
        self._subscriptions: List[Tuple[str, Callable]] = []

    @property
    def execution_provider(self) -> str:
        if callable(self._execution_provider):
            return self._execution_provider()
        return self._execution_provider

    def set_execution_provider(self, provider: Union[str, Callable[[], str]]) -> None:
        self._execution_provider = provider

    def attach(self) -> None:
        """Subscribe to the host events."""
        if self._subscriptions:
            logger.warning("Notification bus already attached")
            return

        for event_name in BROADCAST_EVENTS:
            self._subscribe(event_name, self._forward)
        self._subscribe(TAB_CHANGED, self._on_tab_changed)
        logger.info("Notification bus attached", events=len(self._subscriptions))

    def detach(self) -> None:
        """Remove every subscription made by :meth:`attach`."""
        for event_name, handler in self._subscriptions:
            self.event_bus.unsubscribe(event_name, handler)
        self._subscriptions.clear()

    def _subscribe(self, event_name: str, handler: Callable) -> None:
        self.event_bus.subscribe(event_name, handler)
        self._subscriptions.append((event_name, handler))

    async def _forward(self, event: Event) -> Optional[int]:
        if event.name == NEW_TRANSACTION and self.execution_provider != SIMULATED_PROVIDER:
            logger.debug("Transaction not forwarded", provider=self.execution_provider)
            return None

        key, type_ = BROADCAST_EVENTS[event.name]
        delivered = await self.broker.broadcast(make_notification(key, type_, *event.args))
        logger.debug("Host event broadcast", event_name=event.name, delivered=delivered)
        return delivered

    async def _on_tab_changed(self, event: Event) -> None:
        tab_name = event.args[0] if event.args else None
        await self.broker.set_focus(tab_name)
