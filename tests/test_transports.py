"""Tests for the transport implementations."""

import asyncio
import json
import sys

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from conftest import request
from pluginbroker.core.event_bus import EventBus
from pluginbroker.plugins.registry import PluginDescriptor
from pluginbroker.protocol.errors import OriginMismatch, TransportClosed
from pluginbroker.router.broker import Broker
from pluginbroker.transport import CallbackTransport, SubprocessTransport, WebSocketGateway

PLUGIN_SCRIPT = """
import json, sys
print(json.dumps({"id": 1, "action": "request", "key": "cfg", "type": "getConfig", "value": ["f.txt"]}), flush=True)
response = json.loads(sys.stdin.readline())
print("plugin says hi", file=sys.stderr, flush=True)
print(json.dumps({
    "action": "notification",
    "key": "echo",
    "type": "result",
    "value": [response["value"][0], response["id"]],
}), flush=True)
sys.stdin.readline()
"""


class TestCallbackTransport:
    async def test_async_callback(self):
        received = []

        async def deliver(payload):
            received.append(payload)

        transport = CallbackTransport("https://a", deliver)
        await transport.send("{}", "https://a")

        assert received == ["{}"]

    async def test_origin_must_match(self):
        transport = CallbackTransport("https://a", lambda payload: None)
        with pytest.raises(OriginMismatch):
            await transport.send("{}", "https://b")

    async def test_closed(self):
        transport = CallbackTransport("https://a", lambda payload: None)
        await transport.close()

        assert transport.closed
        with pytest.raises(TransportClosed):
            await transport.send("{}", "https://a")


class TestSubprocessTransport:
    async def test_round_trip_with_child_process(self):
        bus = EventBus()
        broker = Broker(event_bus=bus)
        broker.endpoints.register("cfg", "getConfig", lambda title, name: f"config of {name}")

        echoed = asyncio.Event()
        results = []

        def on_echo(event):
            results.append(event.args)
            echoed.set()

        bus.subscribe("plugin.echo.result", on_echo)

        transport = SubprocessTransport("stdio://S", [sys.executable, "-c", PLUGIN_SCRIPT], broker.on_message)
        broker.register(PluginDescriptor("S", "stdio://S"), transport)
        await transport.start()
        try:
            await asyncio.wait_for(echoed.wait(), timeout=10)
            assert transport.pid is not None
            assert transport.is_open
        finally:
            await transport.close()

        assert results == [("config of f.txt", 1)]
        assert not transport.is_open

    async def test_disconnect_callback_runs_when_process_exits(self):
        disconnected = asyncio.Event()

        async def on_message(origin, text):
            pass

        async def on_disconnect():
            disconnected.set()

        transport = SubprocessTransport("stdio://S", [sys.executable, "-c", "pass"], on_message)
        transport.disconnect_callback = on_disconnect
        await transport.start()
        try:
            await asyncio.wait_for(disconnected.wait(), timeout=10)
        finally:
            await transport.close()

    async def test_send_before_start(self):
        transport = SubprocessTransport("stdio://S", [sys.executable, "-c", "pass"], None)
        with pytest.raises(TransportClosed):
            await transport.send("{}", "stdio://S")

    def test_command_required(self):
        with pytest.raises(ValueError):
            SubprocessTransport("stdio://S", [], None)


@pytest.fixture
async def gateway():
    broker = Broker()
    broker.endpoints.register("cfg", "getConfig", lambda title, name: "hello")
    gateway = WebSocketGateway(broker, port=0)
    gateway.register(PluginDescriptor("A", "https://a"))
    await gateway.start()
    yield gateway
    await gateway.stop()


def _uri(gateway, path="/plugins"):
    return f"ws://127.0.0.1:{gateway.bound_port}{path}"


class TestWebSocketGateway:
    async def test_request_response_and_broadcast(self, gateway):
        async with connect(_uri(gateway), origin="https://a") as ws:
            await ws.send(request(1, "cfg", "getConfig", "f.txt"))
            response = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))

            assert response["id"] == 1
            assert response["value"] == ["hello"]
            assert response["error"] is None

            assert await gateway.broker.broadcast_notification("app", "ping") == 1
            notification = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
            assert notification["type"] == "ping"

    async def test_untrusted_origin_is_rejected(self, gateway):
        async with connect(_uri(gateway), origin="https://evil") as ws:
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), timeout=5)
            assert ws.close_code == 1008

    async def test_wrong_path_is_rejected(self, gateway):
        async with connect(_uri(gateway, "/other"), origin="https://a") as ws:
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), timeout=5)
            assert ws.close_code == 1008

    async def test_undeliverable_until_connected(self, gateway):
        assert await gateway.broker.notify("A", "app", "ping") is False
        assert gateway.running
