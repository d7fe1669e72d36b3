"""Endpoint table: host capabilities addressed by ``(key, type)``."""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.logger import get_logger
from ..protocol.envelope import Request, Response, make_response
from ..protocol.errors import CompletionError, ErrorCode, ErrorValue

logger = get_logger(__name__)


class HandlerKind(str, Enum):
    """How a handler hands back its result."""
    COROUTINE = "coroutine"  # async def handler(title, *args) -> result
    SYNC = "sync"  # def handler(title, *args) -> result
    DEFERRED = "deferred"  # def handler(title, *args, completion) -> None


class Completion:
    """One-shot completion handle for a single request.

    Exactly one of :meth:`resolve` or :meth:`reject` may be called; any
    further call raises :class:`CompletionError`. Calling the handle itself
    follows the ``(error, result)`` convention.
    """

    def __init__(self, request: Request, on_done: Callable[[Response], None]):
        self.request = request
        self._on_done = on_done
        self._response: Optional[Response] = None

    @property
    def done(self) -> bool:
        return self._response is not None

    @property
    def response(self) -> Optional[Response]:
        return self._response

    def resolve(self, result: Any = None) -> None:
        """Complete the request successfully with ``result``."""
        self._finish(result, None)

    def reject(self, error: Any) -> None:
        """Complete the request with an error.

        ``error`` may be an :class:`ErrorValue`, an exception (an
        :class:`~pluginbroker.protocol.errors.EndpointError` keeps its code),
        a dict carrying ``code``, or a message.
        """
        if error is None:
            raise ValueError("reject() needs an error; use resolve() for success")
        self._finish(None, error)

    def __call__(self, error: Any = None, result: Any = None) -> None:
        if error is not None:
            self.reject(error)
        else:
            self.resolve(result)

    def _finish(self, result: Any, error: Any) -> None:
        if self._response is not None:
            raise CompletionError(
                f"request {self.request.id} for {self.request.endpoint} already completed"
            )
        try:
            response = make_response(self.request, result, error)
        except Exception as e:
            # Malformed error reported by the handler
            response = make_response(self.request, None, ErrorValue.from_exception(e))
        self._response = response
        self._on_done(response)


@dataclass
class Endpoint:
    """A registered endpoint."""

    key: str
    type: str
    handler: Callable
    kind: HandlerKind
    arity: Optional[int] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.key}/{self.type}"

    def check_arity(self, args: List[Any]) -> Optional[ErrorValue]:
        """Return a bad-request error if ``args`` has the wrong length."""
        if self.arity is None or len(args) == self.arity:
            return None
        return ErrorValue(
            code=ErrorCode.BAD_REQUEST,
            msg=f"Endpoint {self.name} expects {self.arity} argument(s), got {len(args)}",
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "type": self.type,
            "kind": self.kind.value,
            "arity": self.arity,
            "description": self.description,
            "metadata": self.metadata,
        }


def expose(
    type: Optional[str] = None,
    *,
    deferred: bool = False,
    arity: Optional[int] = None,
    description: str = "",
):
    """Mark a method of an API object for :meth:`EndpointTable.register_api`.

    Methods without the marker are still exposed under their own name with
    default options.
    """
    def decorator(func: Callable) -> Callable:
        func._endpoint_options = {
            "type": type or func.__name__,
            "deferred": deferred,
            "arity": arity,
            "description": description,
        }
        return func
    return decorator


def _handler_kind(handler: Callable, deferred: bool) -> HandlerKind:
    if deferred:
        return HandlerKind.DEFERRED
    if inspect.iscoroutinefunction(handler):
        return HandlerKind.COROUTINE
    return HandlerKind.SYNC


def _check_signature(handler: Callable, name: str, arity: Optional[int], deferred: bool) -> None:
    """Fail at registration if the handler cannot take the arguments it will get."""
    if arity is None:
        return
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return
    positional = [None] * (1 + arity + (1 if deferred else 0))
    try:
        signature.bind(*positional)
    except TypeError as e:
        raise ValueError(f"Handler for {name} cannot accept {arity} argument(s): {e}") from e


class EndpointTable:
    """Mapping from ``(key, type)`` to host-side handlers."""

    def __init__(self):
        self._endpoints: Dict[Tuple[str, str], Endpoint] = {}

    def register(
        self,
        key: str,
        type: str,
        handler: Callable,
        *,
        deferred: bool = False,
        arity: Optional[int] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Endpoint:
        """
        Register a handler for ``key/type``.

        Args:
            key: Endpoint group (e.g. ``"config"``)
            type: Endpoint name inside the group (e.g. ``"getConfig"``)
            handler: Callable receiving the plugin title first, then the
                request values
            deferred: If True, the handler also receives a
                :class:`Completion` as its last argument and must fulfil it
                exactly once, possibly later
            arity: Expected number of request values, checked per request
            description: Human readable description

        Returns:
            The registered endpoint
        """
        if not isinstance(key, str) or not key:
            raise ValueError("Endpoint key must be a non-empty string")
        if not isinstance(type, str) or not type:
            raise ValueError("Endpoint type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {key}/{type} is not callable")
        if arity is not None and arity < 0:
            raise ValueError("Endpoint arity must be >= 0")

        _check_signature(handler, f"{key}/{type}", arity, deferred)

        endpoint = Endpoint(
            key=key,
            type=type,
            handler=handler,
            kind=_handler_kind(handler, deferred),
            arity=arity,
            description=description,
            metadata=metadata or {},
        )

        if (key, type) in self._endpoints:
            logger.warning("Endpoint already registered, overwriting", endpoint=endpoint.name)

        self._endpoints[(key, type)] = endpoint
        logger.debug("Endpoint registered", endpoint=endpoint.name, kind=endpoint.kind.value)
        return endpoint

    def endpoint(
        self,
        key: str,
        type: Optional[str] = None,
        *,
        deferred: bool = False,
        arity: Optional[int] = None,
        description: str = "",
    ):
        """Decorator registering a function as ``key/type`` (default: its name)."""
        def decorator(func: Callable) -> Callable:
            self.register(
                key,
                type or func.__name__,
                func,
                deferred=deferred,
                arity=arity,
                description=description,
            )
            return func
        return decorator

    def register_api(self, key: str, api: Any) -> List[Endpoint]:
        """Expose every public method of ``api`` under ``key``."""
        registered = []
        for attr_name, member in inspect.getmembers(api, callable):
            if attr_name.startswith("_"):
                continue
            options = dict(getattr(member, "_endpoint_options", {}))
            type_name = options.pop("type", attr_name)
            registered.append(self.register(key, type_name, member, **options))

        logger.info("Endpoint group registered", key=key, count=len(registered))
        return registered

    def unregister(self, key: str, type: str) -> bool:
        """Remove one endpoint. Returns False if it was not registered."""
        endpoint = self._endpoints.pop((key, type), None)
        if endpoint is None:
            return False
        logger.debug("Endpoint unregistered", endpoint=endpoint.name)
        return True

    def unregister_key(self, key: str) -> int:
        """Remove every endpoint under ``key``."""
        doomed = [k for k in self._endpoints if k[0] == key]
        for k in doomed:
            del self._endpoints[k]
        return len(doomed)

    def lookup(self, key: str, type: str) -> Optional[Endpoint]:
        """Get the endpoint for ``key/type``."""
        return self._endpoints.get((key, type))

    def __contains__(self, item: Tuple[str, str]) -> bool:
        return item in self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def keys(self) -> List[str]:
        """Get the distinct endpoint groups."""
        return sorted({key for key, _ in self._endpoints})

    def get_stats(self) -> Dict[str, Any]:
        """Get table statistics."""
        by_kind = {kind.value: 0 for kind in HandlerKind}
        for endpoint in self._endpoints.values():
            by_kind[endpoint.kind.value] += 1
        return {
            "total_endpoints": len(self._endpoints),
            "keys": len(self.keys()),
            "by_kind": by_kind,
            "endpoints": [endpoint.to_dict() for endpoint in self._endpoints.values()],
        }
