"""Shared fixtures for the broker test suite."""

import json
from typing import Any, Dict, List

import pytest

from pluginbroker.plugins.endpoints import EndpointTable
from pluginbroker.plugins.registry import PluginDescriptor
from pluginbroker.router.broker import Broker
from pluginbroker.transport.base import CallbackTransport


class RecordingTransport(CallbackTransport):
    """Transport keeping every payload it was asked to deliver."""

    def __init__(self, origin: str):
        self.sent: List[str] = []
        super().__init__(origin, self.sent.append)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(payload) for payload in self.sent]

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["type"] == type_]


def request(id: int, key: str, type: str, *values: Any) -> str:
    return json.dumps({"id": id, "action": "request", "key": key, "type": type, "value": list(values)})


@pytest.fixture
def endpoints() -> EndpointTable:
    return EndpointTable()


@pytest.fixture
def broker(endpoints) -> Broker:
    return Broker(endpoints=endpoints)


@pytest.fixture
def desc_a() -> PluginDescriptor:
    return PluginDescriptor(title="A", url="https://a")


@pytest.fixture
def desc_b() -> PluginDescriptor:
    return PluginDescriptor(title="B", url="https://b")


@pytest.fixture
def plugin_a(broker, desc_a) -> RecordingTransport:
    transport = RecordingTransport(desc_a.url)
    broker.register(desc_a, transport)
    return transport


@pytest.fixture
def plugin_b(broker, desc_b) -> RecordingTransport:
    transport = RecordingTransport(desc_b.url)
    broker.register(desc_b, transport)
    return transport
