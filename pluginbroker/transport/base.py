"""Transport handles bound to plugins at registration."""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from ..protocol.errors import OriginMismatch, TransportClosed


class PluginTransport(ABC):
    """Send primitive for one plugin.

    ``origin`` is the identity the plugin's messages arrive from. Delivery
    is refused unless the broker targets exactly that origin.
    """

    def __init__(self, origin: str):
        self.origin = origin
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, payload: str, target_origin: str) -> None:
        """Deliver an encoded envelope.

        Raises:
            TransportClosed: if the transport was closed
            OriginMismatch: if ``target_origin`` is not this transport's origin
        """
        if not self.is_open:
            raise TransportClosed(f"transport for {self.origin} is closed")
        if target_origin != self.origin:
            raise OriginMismatch(f"target {target_origin} does not match {self.origin}")
        await self._deliver(payload)

    @abstractmethod
    async def _deliver(self, payload: str) -> None:
        """Write the payload to the plugin."""

    async def close(self) -> None:
        self._closed = True

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<{self.__class__.__name__} {self.origin} {state}>"


class CallbackTransport(PluginTransport):
    """Transport delivering through a host-provided callable.

    The callable receives the encoded payload and may be sync or async.
    """

    def __init__(self, origin: str, callback: Callable[[str], Any]):
        super().__init__(origin)
        self._callback = callback

    async def _deliver(self, payload: str) -> None:
        result = self._callback(payload)
        if inspect.isawaitable(result):
            await result
