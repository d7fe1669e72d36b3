"""Message broker between the host and its plugins."""

import asyncio
import inspect
from typing import Any, Coroutine, Dict, List, Optional, Set, Union

from ..core.event_bus import EventBus
from ..core.logger import get_logger
from ..plugins.endpoints import Completion, Endpoint, EndpointTable, HandlerKind
from ..plugins.focus import FocusStateMachine, FocusTransition
from ..plugins.interceptor import InterceptorRegistry
from ..plugins.registry import PluginDescriptor, PluginRecord, PluginRegistry
from ..protocol.envelope import (
    Notification,
    Request,
    Response,
    decode_envelope,
    encode_envelope,
    make_notification,
)
from ..protocol.errors import (
    CompletionError,
    EnvelopeDecodeError,
    ErrorCode,
    ErrorValue,
    TransportError,
)

logger = get_logger(__name__)

OutboundEnvelope = Union[Request, Response, Notification, str]

COMPILATION_RESULT_ENDPOINT = ("compiler", "getCompilationResult")


class Broker:
    """Routes envelopes between plugins and host endpoints.

    One broker owns the plugin registry, the focus state and the endpoint
    table of a host session. All methods are meant to run on a single event
    loop; inbound messages of one plugin are handled in arrival order.
    """

    def __init__(
        self,
        endpoints: Optional[EndpointTable] = None,
        interceptors: Optional[InterceptorRegistry] = None,
        event_bus: Optional[EventBus] = None,
        max_payload_bytes: Optional[int] = None,
        compilation_timeout: float = 5.0,
    ):
        """Initialize broker.

        Args:
            endpoints: Endpoint table to dispatch into (default: empty)
            interceptors: Request/notification interceptors (default: none)
            event_bus: Bus receiving notifications sent by plugins
            max_payload_bytes: Inbound payloads above this size are dropped
            compilation_timeout: Seconds to wait for compilation data on focus
        """
        self.registry = PluginRegistry()
        self.endpoints = endpoints if endpoints is not None else EndpointTable()
        self.interceptors = interceptors if interceptors is not None else InterceptorRegistry()
        self.event_bus = event_bus
        self.max_payload_bytes = max_payload_bytes
        self.compilation_timeout = compilation_timeout
        self.focus = FocusStateMachine(
            is_registered=self.registry.__contains__,
            post=self.post,
            fetch_compilation=self._fetch_compilation_data,
        )
        self._tasks: Set[asyncio.Task] = set()

    # ==================== Registration ====================

    def register(self, descriptor: PluginDescriptor, transport: Any) -> PluginRecord:
        """Register a plugin and bind its origin to its transport."""
        record = self.registry.register(descriptor, transport)
        in_focus = self.focus.in_focus
        if in_focus is not None and in_focus not in self.registry:
            # Focused plugin was evicted by an origin takeover
            self.focus.forget(in_focus)
        return record

    def unregister(self, descriptor: PluginDescriptor) -> None:
        """Unregister a plugin. Unknown plugins are ignored."""
        self.registry.unregister(descriptor)
        if descriptor.title not in self.registry:
            self.focus.forget(descriptor.title)

    async def set_focus(self, title: Optional[str]) -> FocusTransition:
        """Give focus to ``title`` (see :class:`FocusStateMachine`)."""
        return await self.focus.set_focus(title)

    @property
    def in_focus(self) -> Optional[str]:
        return self.focus.in_focus

    # ==================== Inbound ====================

    async def on_message(self, origin: str, raw_payload: Union[str, bytes, dict]) -> None:
        """Handle a payload received from ``origin``.

        Untrusted origins and malformed payloads are dropped without reply.
        Never raises.
        """
        title = self.registry.resolve(origin)
        if title is None:
            logger.debug("Dropping message from untrusted origin", origin=origin)
            return

        try:
            envelope = decode_envelope(raw_payload, self.max_payload_bytes)
        except EnvelopeDecodeError as e:
            logger.warning("Dropping malformed envelope", plugin=title, error=str(e))
            return

        try:
            if isinstance(envelope, Request):
                await self._dispatch(origin, title, envelope)
            else:
                await self._received_data_from(title, envelope)
        except Exception as e:
            logger.error(
                "Error handling plugin message",
                plugin=title,
                endpoint=envelope.endpoint,
                error=str(e),
                exc_info=True
            )

    async def _dispatch(self, origin: str, title: str, request: Request) -> None:
        """Run the endpoint for ``request``; the response goes back to ``origin``."""
        completion = Completion(
            request,
            lambda response: self._spawn(self._deliver_response(origin, title, response)),
        )

        endpoint = self.endpoints.lookup(request.key, request.type)
        if endpoint is None:
            logger.info("Endpoint not present", plugin=title, endpoint=request.endpoint)
            completion.reject(ErrorValue(
                code=ErrorCode.NOT_FOUND,
                msg=f"Endpoint {request.key}/{request.type} not present",
            ))
            return

        allowed, reason = await self.interceptors.intercept_request(
            title, request.key, request.type, request.value
        )
        if not allowed:
            completion.reject(ErrorValue(
                code=ErrorCode.FORBIDDEN,
                msg=reason or f"Plugin {title} is not allowed to call {request.endpoint}",
            ))
            return

        arity_error = endpoint.check_arity(request.value)
        if arity_error is not None:
            completion.reject(arity_error)
            return

        logger.debug(
            "Dispatching request",
            plugin=title,
            endpoint=request.endpoint,
            request_id=request.id
        )

        if endpoint.kind is HandlerKind.COROUTINE:
            self._spawn(self._invoke(endpoint, title, request.value, completion))
        else:
            await self._invoke(endpoint, title, request.value, completion)

    async def _invoke(
        self,
        endpoint: Endpoint,
        title: str,
        args: List[Any],
        completion: Completion,
    ) -> None:
        """Call a handler and complete the request from its outcome."""
        try:
            if endpoint.kind is HandlerKind.COROUTINE:
                result = await endpoint.handler(title, *args)
                completion.resolve(result)
            elif endpoint.kind is HandlerKind.SYNC:
                result = endpoint.handler(title, *args)
                completion.resolve(result)
            else:
                outcome = endpoint.handler(title, *args, completion)
                if inspect.isawaitable(outcome):
                    await outcome
        except CompletionError as e:
            logger.error("Handler completed a request twice", endpoint=endpoint.name, error=str(e))
        except Exception as e:
            if completion.done:
                logger.error(
                    "Handler raised after completing its request",
                    endpoint=endpoint.name,
                    error=str(e),
                    exc_info=True
                )
                return
            logger.warning(
                "Endpoint handler failed",
                plugin=title,
                endpoint=endpoint.name,
                error=str(e)
            )
            completion.reject(e)

    async def _deliver_response(self, origin: str, title: str, response: Response) -> None:
        record = self.registry.get(title)
        if record is None or record.origin != origin:
            # Requester left or its origin now belongs to someone else
            logger.debug(
                "Dropping response for departed plugin",
                plugin=title,
                origin=origin,
                endpoint=response.endpoint
            )
            return

        try:
            payload = encode_envelope(response)
        except ValueError as e:
            logger.error("Response not serializable", plugin=title, endpoint=response.endpoint, error=str(e))
            payload = encode_envelope(response.model_copy(update={
                "value": [None],
                "error": ErrorValue(code=ErrorCode.INTERNAL, msg=str(e)),
            }))
        await self._send(record, payload)

    async def _received_data_from(self, title: str, envelope: Union[Notification, Response]) -> None:
        """Forward a plugin-originated notification to the host event bus."""
        # TODO: gate plugin-originated events through the request interceptors
        if self.event_bus is None:
            logger.debug("Ignoring plugin notification", plugin=title, endpoint=envelope.endpoint)
            return
        await self.event_bus.emit(
            f"plugin.{envelope.key}.{envelope.type}",
            *envelope.value,
            source=title,
        )

    async def _fetch_compilation_data(self, title: str) -> Any:
        """Ask the compiler endpoint for ``title``'s current compilation result."""
        endpoint = self.endpoints.lookup(*COMPILATION_RESULT_ENDPOINT)
        if endpoint is None:
            return None

        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_done(response: Response) -> None:
            if not future.done():
                future.set_result(response)

        key, type_ = COMPILATION_RESULT_ENDPOINT
        completion = Completion(Request(id=0, key=key, type=type_, value=[]), on_done)

        async def fetch() -> Response:
            await self._invoke(endpoint, title, [], completion)
            return await future

        # The timeout covers the handler itself, whatever its kind
        try:
            response = await asyncio.wait_for(fetch(), timeout=self.compilation_timeout)
        except asyncio.TimeoutError:
            logger.warning("Compilation data not available in time", plugin=title)
            return None

        if response.error is not None:
            logger.debug("No compilation data", plugin=title, error=response.error.msg)
            return None
        return response.result

    # ==================== Outbound ====================

    async def post(self, title: str, envelope: OutboundEnvelope) -> bool:
        """Send an envelope to one plugin.

        Returns:
            True if the transport accepted it; unknown plugins and delivery
            failures return False.
        """
        record = self.registry.get(title)
        if record is None:
            return False
        payload = envelope if isinstance(envelope, str) else encode_envelope(envelope)
        return await self._send(record, payload)

    async def post_to_origin(self, origin: str, envelope: OutboundEnvelope) -> bool:
        """Send an envelope to the plugin bound to ``origin``."""
        title = self.registry.resolve(origin)
        if title is None:
            return False
        return await self.post(title, envelope)

    async def broadcast(self, envelope: OutboundEnvelope) -> int:
        """Send an envelope to every registered plugin.

        Notifications go through the notification interceptors first.

        Returns:
            Number of plugins the envelope was delivered to
        """
        if isinstance(envelope, Notification):
            allowed, envelope = await self.interceptors.intercept_notification(envelope)
            if not allowed:
                logger.debug("Broadcast blocked by interceptor")
                return 0

        payload = envelope if isinstance(envelope, str) else encode_envelope(envelope)
        delivered = 0
        for record in self.registry.records():
            if await self._send(record, payload):
                delivered += 1
        return delivered

    async def notify(self, title: str, key: str, type: str, *values: Any) -> bool:
        """Send a notification to one plugin."""
        return await self.post(title, make_notification(key, type, *values))

    async def broadcast_notification(self, key: str, type: str, *values: Any) -> int:
        """Broadcast a notification to all plugins."""
        return await self.broadcast(make_notification(key, type, *values))

    async def _send(self, record: PluginRecord, payload: str) -> bool:
        try:
            await record.transport.send(payload, record.origin)
            return True
        except TransportError as e:
            logger.debug("Delivery dropped", plugin=record.title, error=str(e))
        except Exception as e:
            logger.warning("Delivery failed", plugin=record.title, error=str(e), exc_info=True)
        return False

    # ==================== Lifecycle ====================

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until running handlers and queued responses are finished.

        Deferred handlers that have not fulfilled their completion are not
        waited for.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        """Get broker statistics."""
        return {
            "registry": self.registry.get_stats(),
            "endpoints": self.endpoints.get_stats(),
            "in_focus": self.focus.in_focus,
            "pending_tasks": len(self._tasks),
        }
