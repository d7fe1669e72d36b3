"""Interceptors run by the broker around dispatch and broadcast.

Request interceptors are the authorization hook: they see every request
after its origin was authenticated and before a handler runs, and may
block it. Notification interceptors see every broadcast and may block or
rewrite it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..core.logger import get_logger
from ..protocol.envelope import Notification

logger = get_logger(__name__)


@dataclass
class InterceptorResult:
    """Result of interceptor execution."""

    # False blocks the operation
    allow: bool = True

    # Replacement notification (None = unchanged); ignored for requests
    modified: Optional[Notification] = None

    # Reason for blocking (if allow=False)
    block_reason: Optional[str] = None

    def is_blocked(self) -> bool:
        return not self.allow

    def is_modified(self) -> bool:
        return self.modified is not None

    @classmethod
    def block(cls, reason: Optional[str] = None) -> "InterceptorResult":
        return cls(allow=False, block_reason=reason)


class RequestInterceptor(ABC):
    """Base class for request interceptors."""

    def __init__(self, name: str, priority: int = 100):
        """
        Args:
            name: Identifier used when unregistering
            priority: Lower runs earlier
        """
        self.name = name
        self.priority = priority

    @abstractmethod
    async def intercept_request(
        self,
        plugin: str,
        key: str,
        type: str,
        args: List[Any],
    ) -> InterceptorResult:
        """Decide whether ``plugin`` may call ``key/type`` with ``args``."""


class NotificationInterceptor(ABC):
    """Base class for notification interceptors."""

    def __init__(self, name: str, priority: int = 100):
        self.name = name
        self.priority = priority

    @abstractmethod
    async def intercept_notification(self, notification: Notification) -> InterceptorResult:
        """Decide whether ``notification`` is broadcast, possibly rewritten."""


class AllowListInterceptor(RequestInterceptor):
    """Only lets plugins call the endpoints they were granted.

    Grants are ``"key/type"`` strings, or ``"key/*"`` for a whole group.
    Plugins without an entry are refused everything unless
    ``default_allow`` is set.
    """

    def __init__(
        self,
        grants: Optional[Dict[str, Iterable[str]]] = None,
        default_allow: bool = False,
        priority: int = 0,
    ):
        super().__init__("allow_list", priority)
        self.default_allow = default_allow
        self._grants: Dict[str, Set[str]] = {
            plugin: set(endpoints) for plugin, endpoints in (grants or {}).items()
        }

    def grant(self, plugin: str, *endpoints: str) -> None:
        self._grants.setdefault(plugin, set()).update(endpoints)

    def revoke(self, plugin: str, *endpoints: str) -> None:
        if not endpoints:
            self._grants.pop(plugin, None)
            return
        self._grants.get(plugin, set()).difference_update(endpoints)

    async def intercept_request(self, plugin, key, type, args) -> InterceptorResult:
        granted = self._grants.get(plugin)
        if granted is None:
            return InterceptorResult(allow=self.default_allow)
        if f"{key}/{type}" in granted or f"{key}/*" in granted:
            return InterceptorResult()
        return InterceptorResult.block(f"Plugin {plugin} is not allowed to call {key}/{type}")


class InterceptorRegistry:
    """Registry for managing interceptors."""

    def __init__(self):
        self._request_interceptors: List[RequestInterceptor] = []
        self._notification_interceptors: List[NotificationInterceptor] = []

    def register_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self._request_interceptors.append(interceptor)
        self._request_interceptors.sort(key=lambda x: x.priority)

    def register_notification_interceptor(self, interceptor: NotificationInterceptor) -> None:
        self._notification_interceptors.append(interceptor)
        self._notification_interceptors.sort(key=lambda x: x.priority)

    def unregister(self, name: str) -> bool:
        """Remove every interceptor registered under ``name``."""
        before = len(self._request_interceptors) + len(self._notification_interceptors)
        self._request_interceptors = [i for i in self._request_interceptors if i.name != name]
        self._notification_interceptors = [
            i for i in self._notification_interceptors if i.name != name
        ]
        return len(self._request_interceptors) + len(self._notification_interceptors) < before

    async def intercept_request(
        self,
        plugin: str,
        key: str,
        type: str,
        args: List[Any],
    ) -> Tuple[bool, Optional[str]]:
        """Run all request interceptors.

        Returns:
            Tuple of (allow, block_reason)
        """
        for interceptor in self._request_interceptors:
            try:
                result = await interceptor.intercept_request(plugin, key, type, list(args))
            except Exception as e:
                logger.error(
                    "Error in request interceptor",
                    interceptor=interceptor.name,
                    error=str(e),
                    exc_info=True
                )
                continue

            if result.is_blocked():
                logger.info(
                    "Request blocked by interceptor",
                    interceptor=interceptor.name,
                    plugin=plugin,
                    endpoint=f"{key}/{type}"
                )
                return (False, result.block_reason)

        return (True, None)

    async def intercept_notification(
        self,
        notification: Notification,
    ) -> Tuple[bool, Notification]:
        """Run all notification interceptors.

        Returns:
            Tuple of (allow, notification to send)
        """
        current = notification
        for interceptor in self._notification_interceptors:
            try:
                result = await interceptor.intercept_notification(current)
            except Exception as e:
                logger.error(
                    "Error in notification interceptor",
                    interceptor=interceptor.name,
                    error=str(e),
                    exc_info=True
                )
                continue

            if result.is_blocked():
                return (False, current)
            if result.is_modified():
                current = result.modified

        return (True, current)
