"""Transports binding plugins to the broker."""

from .base import CallbackTransport, PluginTransport
from .subprocess import SubprocessTransport
from .websocket import WebSocketGateway, WebSocketTransport

__all__ = [
    "CallbackTransport",
    "PluginTransport",
    "SubprocessTransport",
    "WebSocketGateway",
    "WebSocketTransport",
]
