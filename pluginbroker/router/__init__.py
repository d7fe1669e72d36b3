"""Message routing."""

from .broker import Broker

__all__ = [
    "Broker",
]
