"""Registry of connected plugins and their origin bindings."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.logger import get_logger
from ..protocol.errors import RegistryInconsistency

logger = get_logger(__name__)


@dataclass(frozen=True)
class PluginDescriptor:
    """Identity of a plugin: a unique title and the origin it talks from."""

    title: str
    url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PluginDescriptor":
        return cls(title=str(data["title"]), url=str(data["url"]))

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url}


@dataclass
class PluginRecord:
    """A registered plugin's transport and the origin it is bound to."""

    title: str
    origin: str
    transport: Any


class PluginRegistry:
    """Two-way mapping between plugin titles and origins.

    ``plugins`` maps a title to its record and ``origins`` maps an origin
    back to the title; both are always changed together so that
    ``origins[o] == t`` exactly when ``plugins[t].origin == o``.
    """

    def __init__(self):
        self._plugins: Dict[str, PluginRecord] = {}
        self._origins: Dict[str, str] = {}

    def register(self, descriptor: PluginDescriptor, transport: Any) -> PluginRecord:
        """
        Register or re-register a plugin.

        Re-registering a title replaces its transport and origin; the old
        origin stops resolving. Registering on an origin held by another
        title evicts that plugin.

        Returns:
            The new record
        """
        title, origin = descriptor.title, descriptor.url
        if not title or not origin:
            raise ValueError("Plugin descriptor needs a title and a url")

        previous = self._plugins.get(title)
        if previous is not None and previous.origin != origin:
            del self._origins[previous.origin]
            logger.info(
                "Plugin re-registered under a new origin",
                plugin=title,
                old_origin=previous.origin,
                origin=origin
            )

        holder = self._origins.get(origin)
        if holder is not None and holder != title:
            del self._plugins[holder]
            logger.warning(
                "Origin already bound to another plugin, evicting it",
                origin=origin,
                evicted=holder,
                plugin=title
            )

        record = PluginRecord(title=title, origin=origin, transport=transport)
        self._plugins[title] = record
        self._origins[origin] = title

        logger.info("Plugin registered", plugin=title, origin=origin)
        return record

    def unregister(self, descriptor: PluginDescriptor) -> Optional[PluginRecord]:
        """Remove a plugin. Unknown plugins are ignored.

        Returns:
            The removed record, if any
        """
        record = self._plugins.pop(descriptor.title, None)
        if record is not None:
            self._origins.pop(record.origin, None)
        # A stale origin binding never outlives its title
        if self._origins.get(descriptor.url) == descriptor.title:
            del self._origins[descriptor.url]

        if record is not None:
            logger.info("Plugin unregistered", plugin=record.title, origin=record.origin)
        return record

    def resolve(self, origin: str) -> Optional[str]:
        """Get the title bound to ``origin``; ``None`` means untrusted."""
        return self._origins.get(origin)

    def lookup_transport(self, title: str) -> Optional[Any]:
        """Get the transport of a registered plugin."""
        record = self._plugins.get(title)
        return record.transport if record else None

    def get(self, title: str) -> Optional[PluginRecord]:
        """Get the record of a registered plugin."""
        return self._plugins.get(title)

    def titles(self) -> List[str]:
        """Get the titles of all registered plugins (no particular order)."""
        return list(self._plugins)

    def records(self) -> List[PluginRecord]:
        return list(self._plugins.values())

    def __contains__(self, title: str) -> bool:
        return title in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    def check_consistency(self) -> None:
        """Raise if the title and origin mappings disagree."""
        if len(self._plugins) != len(self._origins):
            raise RegistryInconsistency(
                f"{len(self._plugins)} plugins but {len(self._origins)} origins"
            )
        for title, record in self._plugins.items():
            if self._origins.get(record.origin) != title:
                raise RegistryInconsistency(
                    f"plugin {title!r} bound to {record.origin!r} which resolves to "
                    f"{self._origins.get(record.origin)!r}"
                )

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        return {
            "plugins": len(self._plugins),
            "origins": len(self._origins),
        }
