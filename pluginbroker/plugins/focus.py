"""Single-focus state machine."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..core.logger import get_logger
from ..protocol.envelope import Notification, make_notification

logger = get_logger(__name__)


class FocusState(str, Enum):
    UNFOCUSED = "unfocused"
    FOCUSED = "focused"


@dataclass(frozen=True)
class FocusTransition:
    """Outcome of a :meth:`FocusStateMachine.set_focus` call."""

    previous: Optional[str]
    current: Optional[str]

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class FocusStateMachine:
    """Tracks which single plugin is focused.

    On a change the previously focused plugin gets ``app/unfocus`` before
    the new one gets ``app/focus``, followed by ``compiler/compilationData``
    when compilation data is available. Changes are serialized by a lock,
    so notifications of two transitions never interleave.
    """

    def __init__(
        self,
        is_registered: Callable[[str], bool],
        post: Callable[[str, Notification], Awaitable[Any]],
        fetch_compilation: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self._is_registered = is_registered
        self._post = post
        self._fetch_compilation = fetch_compilation
        self._in_focus: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def in_focus(self) -> Optional[str]:
        return self._in_focus

    @property
    def state(self) -> FocusState:
        return FocusState.UNFOCUSED if self._in_focus is None else FocusState.FOCUSED

    async def set_focus(self, title: Optional[str]) -> FocusTransition:
        """Move focus to ``title``.

        A title that is not registered (or ``None``) leaves nothing focused.
        """
        async with self._lock:
            previous = self._in_focus
            if title == previous:
                return FocusTransition(previous, previous)

            if previous is not None:
                await self._post(previous, make_notification("app", "unfocus"))

            if title is None or not self._is_registered(title):
                self._in_focus = None
                logger.debug("Focus cleared", previous=previous, requested=title)
                return FocusTransition(previous, None)

            await self._post(title, make_notification("app", "focus"))
            self._in_focus = title
            logger.debug("Focus changed", previous=previous, plugin=title)

            if self._fetch_compilation is not None:
                data = await self._fetch_compilation(title)
                if data is not None:
                    await self._post(title, make_notification("compiler", "compilationData", data))

            return FocusTransition(previous, title)

    def forget(self, title: str) -> None:
        """Drop focus silently if ``title`` holds it (used on unregister)."""
        if self._in_focus == title:
            self._in_focus = None
