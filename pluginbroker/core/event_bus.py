"""Event bus for asynchronous host-side event delivery."""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import uuid

from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class Event:
    """Event data structure.

    ``args`` holds the positional payload of the host event (for example
    ``(success, data, source)`` for a finished compilation).
    """

    name: str
    args: tuple = ()
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "event_id": self.event_id,
            "name": self.name,
            "args": list(self.args),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "metadata": self.metadata,
        }


class EventBus:
    """Asynchronous event bus for publish-subscribe pattern.

    Events can be queued with :meth:`publish` (processed by a background
    task once :meth:`start` has been called) or dispatched inline with
    :meth:`emit`. Subscribers run one after another in subscription order,
    so a single event never has two handlers running at the same time.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._wildcard_subscribers: List[Callable] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._running = False
        self._event_queue: Optional[asyncio.Queue] = None
        self._processor_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the event bus processor."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._event_queue = asyncio.Queue()
        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the event bus processor after the queue drains."""
        if not self._running:
            return

        await self._event_queue.join()
        self._running = False

        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None

        logger.info("Event bus stopped")

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            event = await self._event_queue.get()
            try:
                await self._dispatch_event(event)
            except Exception as e:
                logger.error("Error processing event", error=str(e), exc_info=True)
            finally:
                self._event_queue.task_done()

    async def _dispatch_event(self, event: Event) -> None:
        """Dispatch event to all subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history.pop(0)

        subscribers = self._subscribers.get(event.name, []).copy()
        subscribers.extend(self._wildcard_subscribers)

        logger.debug(
            "Dispatching event",
            event_name=event.name,
            event_id=event.event_id,
            subscriber_count=len(subscribers)
        )

        for subscriber in subscribers:
            await self._call_subscriber(subscriber, event)

    async def _call_subscriber(self, subscriber: Callable, event: Event) -> None:
        """Call a single subscriber with error handling."""
        try:
            if inspect.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(
                "Error in event subscriber",
                event_name=event.name,
                subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                error=str(e),
                exc_info=True
            )

    def _make_event(
        self,
        event_name: str,
        args: tuple,
        source: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> Event:
        return Event(
            name=event_name,
            args=tuple(args),
            source=source,
            metadata=metadata or {}
        )

    async def publish(
        self,
        event_name: str,
        *args: Any,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Queue an event for the background processor.

        Args:
            event_name: Name of the event
            *args: Event payload
            source: Source of the event (optional)
            metadata: Additional metadata (optional)

        Returns:
            Event ID
        """
        if not self._running:
            raise RuntimeError("Event bus is not running; call start() or use emit()")

        event = self._make_event(event_name, args, source, metadata)
        await self._event_queue.put(event)

        logger.debug("Event published", event_name=event_name, event_id=event.event_id)
        return event.event_id

    async def emit(
        self,
        event_name: str,
        *args: Any,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """Dispatch an event to its subscribers immediately."""
        event = self._make_event(event_name, args, source, metadata)
        await self._dispatch_event(event)
        return event.event_id

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """
        Subscribe to an event.

        Args:
            event_name: Name of the event to subscribe to
            handler: Callback taking an :class:`Event` (can be async)
        """
        self._subscribers.setdefault(event_name, []).append(handler)
        logger.debug(
            "Subscribed to event",
            event_name=event_name,
            handler=getattr(handler, "__name__", repr(handler))
        )

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to all events (wildcard subscription)."""
        self._wildcard_subscribers.append(handler)

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        """Unsubscribe from an event. Unknown handlers are ignored."""
        if event_name in self._subscribers:
            try:
                self._subscribers[event_name].remove(handler)
            except ValueError:
                pass

    def unsubscribe_all(self, handler: Callable) -> None:
        """Remove a wildcard subscription."""
        try:
            self._wildcard_subscribers.remove(handler)
        except ValueError:
            pass

    def get_subscribers(self, event_name: Optional[str] = None) -> List[Callable]:
        """Get list of subscribers for an event."""
        if event_name is None:
            all_subscribers = []
            for subscribers in self._subscribers.values():
                all_subscribers.extend(subscribers)
            all_subscribers.extend(self._wildcard_subscribers)
            return all_subscribers
        return self._subscribers.get(event_name, []).copy()

    def get_event_history(self, limit: int = 100) -> List[Event]:
        """Get recent event history."""
        return self._event_history[-limit:]

    def clear_history(self) -> None:
        """Clear event history."""
        self._event_history.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        return {
            "running": self._running,
            "queue_size": self._event_queue.qsize() if self._event_queue else 0,
            "event_types": len(self._subscribers),
            "total_subscribers": sum(len(subs) for subs in self._subscribers.values()),
            "wildcard_subscribers": len(self._wildcard_subscribers),
            "history_size": len(self._event_history),
        }
