"""Core components: configuration, logging, events and application wiring."""

from .config import BrokerConfig, get_config, reload_config
from .event_bus import Event, EventBus
from .logger import setup_logger, get_logger

__all__ = [
    "BrokerConfig",
    "get_config",
    "reload_config",
    "Event",
    "EventBus",
    "setup_logger",
    "get_logger",
]
