"""Message broker connecting sandboxed plugins to a host application."""

from .core.app import BrokerApplication
from .plugins import EndpointTable, PluginDescriptor
from .router import Broker

__version__ = "0.1.0"

__all__ = [
    "Broker",
    "BrokerApplication",
    "EndpointTable",
    "PluginDescriptor",
]
