"""Plugin bookkeeping: registry, endpoints, focus, interceptors and notifications."""

from .endpoints import Completion, Endpoint, EndpointTable, HandlerKind, expose
from .focus import FocusState, FocusStateMachine, FocusTransition
from .interceptor import (
    AllowListInterceptor,
    InterceptorRegistry,
    InterceptorResult,
    NotificationInterceptor,
    RequestInterceptor,
)
from .notifications import NotificationBus
from .registry import PluginDescriptor, PluginRecord, PluginRegistry

__all__ = [
    "Completion",
    "Endpoint",
    "EndpointTable",
    "HandlerKind",
    "expose",
    "FocusState",
    "FocusStateMachine",
    "FocusTransition",
    "AllowListInterceptor",
    "InterceptorRegistry",
    "InterceptorResult",
    "NotificationInterceptor",
    "RequestInterceptor",
    "NotificationBus",
    "PluginDescriptor",
    "PluginRecord",
    "PluginRegistry",
]
