"""Tests for request routing, delivery and broadcast."""

import asyncio
import json

import pytest

from conftest import RecordingTransport, request
from pluginbroker.core.event_bus import EventBus
from pluginbroker.plugins.interceptor import (
    AllowListInterceptor,
    InterceptorResult,
    NotificationInterceptor,
)
from pluginbroker.plugins.registry import PluginDescriptor
from pluginbroker.protocol.envelope import make_notification
from pluginbroker.protocol.errors import EndpointError, ErrorCode, TransportClosed
from pluginbroker.router.broker import Broker


class TestDispatch:
    async def test_request_gets_matching_response(self, broker, endpoints, plugin_a, plugin_b):
        calls = []

        def get_config(title, name):
            calls.append((title, name))
            return "hello"

        endpoints.register("cfg", "getConfig", get_config)

        await broker.on_message("https://a", request(1, "cfg", "getConfig", "f.txt"))
        await broker.drain()

        assert calls == [("A", "f.txt")]
        assert plugin_a.messages == [{
            "id": 1,
            "action": "response",
            "key": "cfg",
            "type": "getConfig",
            "value": ["hello"],
            "error": None,
        }]
        assert plugin_b.sent == []

    async def test_async_handler(self, broker, endpoints, plugin_a):
        async def compile_file(title, path):
            await asyncio.sleep(0)
            return {"path": path, "ok": True}

        endpoints.register("compiler", "compile", compile_file)

        await broker.on_message("https://a", request(5, "compiler", "compile", "a.sol"))
        await broker.drain()

        [response] = plugin_a.messages
        assert response["id"] == 5
        assert response["value"] == [{"path": "a.sol", "ok": True}]

    async def test_deferred_handler_completes_later(self, broker, endpoints, plugin_a):
        pending = []
        endpoints.register("udapp", "runTx", lambda title, tx, completion: pending.append(completion), deferred=True)

        await broker.on_message("https://a", request(2, "udapp", "runTx", {"to": "0x1"}))
        await broker.drain()
        assert plugin_a.sent == []

        pending[0](None, "0xhash")
        await broker.drain()

        assert plugin_a.messages[0]["value"] == ["0xhash"]
        assert plugin_a.messages[0]["error"] is None

    async def test_missing_endpoint(self, broker, plugin_a):
        await broker.on_message("https://a", request(3, "nope", "missing"))
        await broker.drain()

        [response] = plugin_a.messages
        assert response["id"] == 3
        assert response["key"] == "nope"
        assert response["type"] == "missing"
        assert response["error"] == {"code": 404, "msg": "Endpoint nope/missing not present"}

    async def test_untrusted_origin_produces_no_traffic(self, broker, endpoints, plugin_a, plugin_b):
        calls = []
        endpoints.register("cfg", "getConfig", lambda title, name: calls.append(title))

        await broker.on_message("https://evil", request(1, "cfg", "getConfig", "f.txt"))
        await broker.on_message("https://evil", request(2, "nope", "missing"))
        await broker.drain()

        assert calls == []
        assert plugin_a.sent == []
        assert plugin_b.sent == []

    @pytest.mark.parametrize("payload", ["{", "[]", '{"id": 1}', b"\xff\xfe"])
    async def test_malformed_payload_is_dropped(self, broker, plugin_a, payload):
        await broker.on_message("https://a", payload)
        await broker.drain()
        assert plugin_a.sent == []

    async def test_oversized_payload_is_dropped(self, endpoints, desc_a):
        broker = Broker(endpoints=endpoints, max_payload_bytes=32)
        transport = RecordingTransport(desc_a.url)
        broker.register(desc_a, transport)
        endpoints.register("k", "t", lambda title, *args: True)

        await broker.on_message("https://a", request(1, "k", "t", "x" * 64))
        await broker.drain()

        assert transport.sent == []

    async def test_endpoint_error_is_propagated_verbatim(self, broker, endpoints, plugin_a):
        def read(title, path):
            raise EndpointError(403, "read only", {"path": path})

        endpoints.register("fs", "write", read)

        await broker.on_message("https://a", request(4, "fs", "write", "/etc"))
        await broker.drain()

        assert plugin_a.messages[0]["error"] == {"code": 403, "msg": "read only", "data": {"path": "/etc"}}

    async def test_deferred_error_is_propagated_verbatim(self, broker, endpoints, plugin_a):
        endpoints.register(
            "fs", "read",
            lambda title, path, completion: completion({"code": 7, "msg": "custom", "extra": 1}),
            deferred=True,
        )

        await broker.on_message("https://a", request(4, "fs", "read", "x"))
        await broker.drain()

        assert plugin_a.messages[0]["error"] == {"code": 7, "msg": "custom", "extra": 1}

    async def test_handler_crash_becomes_internal_error(self, broker, endpoints, plugin_a):
        async def broken(title):
            raise RuntimeError("disk on fire")

        endpoints.register("fs", "broken", broken)

        await broker.on_message("https://a", request(6, "fs", "broken"))
        await broker.drain()

        error = plugin_a.messages[0]["error"]
        assert error["code"] == ErrorCode.INTERNAL
        assert error["msg"] == "disk on fire"
        assert "RuntimeError" in error["stack"]

    async def test_handler_completing_twice_sends_one_response(self, broker, endpoints, plugin_a):
        def twice(title, completion):
            completion.resolve(1)
            completion.resolve(2)

        endpoints.register("k", "twice", twice, deferred=True)

        await broker.on_message("https://a", request(8, "k", "twice"))
        await broker.drain()

        assert len(plugin_a.sent) == 1
        assert plugin_a.messages[0]["value"] == [1]

    async def test_unserializable_result(self, broker, endpoints, plugin_a):
        endpoints.register("k", "obj", lambda title: object())

        await broker.on_message("https://a", request(1, "k", "obj"))
        await broker.drain()

        [response] = plugin_a.messages
        assert response["value"] == [None]
        assert response["error"]["code"] == ErrorCode.INTERNAL

    async def test_arity_mismatch(self, broker, endpoints, plugin_a):
        calls = []
        endpoints.register("cfg", "setConfig", lambda title, name, content: calls.append(name), arity=2)

        await broker.on_message("https://a", request(1, "cfg", "setConfig", "only-name"))
        await broker.drain()

        assert calls == []
        assert plugin_a.messages[0]["error"]["code"] == ErrorCode.BAD_REQUEST

    async def test_responses_keep_request_order(self, broker, endpoints, plugin_a):
        endpoints.register("k", "echo", lambda title, n: n)

        for i in range(5):
            await broker.on_message("https://a", request(i, "k", "echo", i))
        await broker.drain()

        assert [m["id"] for m in plugin_a.messages] == [0, 1, 2, 3, 4]

    async def test_response_is_dropped_if_plugin_left(self, broker, endpoints, desc_a, plugin_a):
        pending = []
        endpoints.register("k", "slow", lambda title, completion: pending.append(completion), deferred=True)

        await broker.on_message("https://a", request(1, "k", "slow"))
        broker.unregister(desc_a)
        pending[0].resolve("late")
        await broker.drain()

        assert plugin_a.sent == []

    async def test_late_response_not_delivered_to_origin_takeover(self, broker, endpoints, plugin_a):
        pending = []
        endpoints.register("cfg", "getConfig", lambda title, name, completion: pending.append(completion), deferred=True)

        await broker.on_message("https://a", request(1, "cfg", "getConfig", "secret.txt"))
        takeover = RecordingTransport("https://a")
        broker.register(PluginDescriptor("C", "https://a"), takeover)
        pending[0].resolve("A's secret")
        await broker.drain()

        assert takeover.sent == []
        assert plugin_a.sent == []


class TestAuthorization:
    async def test_allow_list_blocks_ungranted_endpoint(self, broker, endpoints, plugin_a):
        calls = []
        endpoints.register("fs", "write", lambda title, path: calls.append(path))
        endpoints.register("fs", "read", lambda title, path: "data")
        broker.interceptors.register_request_interceptor(AllowListInterceptor({"A": ["fs/read"]}))

        await broker.on_message("https://a", request(1, "fs", "write", "x"))
        await broker.on_message("https://a", request(2, "fs", "read", "x"))
        await broker.drain()

        denied, allowed = plugin_a.messages
        assert calls == []
        assert denied["error"]["code"] == ErrorCode.FORBIDDEN
        assert denied["error"]["msg"] == "Plugin A is not allowed to call fs/write"
        assert allowed["value"] == ["data"]

    async def test_wildcard_grant(self, broker, endpoints, plugin_a):
        endpoints.register("fs", "read", lambda title, path: "data")
        broker.interceptors.register_request_interceptor(AllowListInterceptor({"A": ["fs/*"]}))

        await broker.on_message("https://a", request(1, "fs", "read", "x"))
        await broker.drain()

        assert plugin_a.messages[0]["error"] is None

    async def test_unknown_plugin_uses_default(self, broker, endpoints, plugin_a):
        endpoints.register("fs", "read", lambda title, path: "data")
        broker.interceptors.register_request_interceptor(AllowListInterceptor(default_allow=False))

        await broker.on_message("https://a", request(1, "fs", "read", "x"))
        await broker.drain()

        assert plugin_a.messages[0]["error"]["code"] == ErrorCode.FORBIDDEN

    async def test_grants_and_removal_take_effect_immediately(self, broker, endpoints, plugin_a):
        endpoints.register("fs", "read", lambda title, path: "data")
        allow_list = AllowListInterceptor()
        broker.interceptors.register_request_interceptor(allow_list)

        allow_list.grant("A", "fs/read")
        await broker.on_message("https://a", request(1, "fs", "read", "x"))
        allow_list.revoke("A", "fs/read")
        await broker.on_message("https://a", request(2, "fs", "read", "x"))
        assert broker.interceptors.unregister("allow_list") is True
        await broker.on_message("https://a", request(3, "fs", "read", "x"))
        await broker.drain()

        codes = [m["error"]["code"] if m["error"] else None for m in plugin_a.messages]
        assert codes == [None, ErrorCode.FORBIDDEN, None]
        assert broker.interceptors.unregister("allow_list") is False


class TestOutbound:
    async def test_broadcast_reaches_every_plugin_once(self, broker, plugin_a, plugin_b):
        transports = [plugin_a, plugin_b]
        for i in range(3):
            transport = RecordingTransport(f"https://p{i}")
            broker.register(PluginDescriptor(f"P{i}", f"https://p{i}"), transport)
            transports.append(transport)

        delivered = await broker.broadcast(make_notification("editor", "currentFileChanged", "a.sol"))

        assert delivered == 5
        for transport in transports:
            assert transport.messages == [{
                "action": "notification",
                "key": "editor",
                "type": "currentFileChanged",
                "value": ["a.sol"],
            }]

    async def test_broadcast_skips_failed_transport(self, broker, plugin_a, plugin_b):
        await plugin_b.close()

        delivered = await broker.broadcast_notification("app", "ping")

        assert delivered == 1
        assert len(plugin_a.sent) == 1

    async def test_broadcast_with_no_plugins(self, broker):
        assert await broker.broadcast_notification("app", "ping") == 0

    async def test_post_unknown_title(self, broker, plugin_a):
        assert await broker.post("Z", make_notification("app", "ping")) is False
        assert plugin_a.sent == []

    async def test_post_to_origin(self, broker, plugin_a, plugin_b):
        assert await broker.post_to_origin("https://b", make_notification("app", "ping")) is True
        assert await broker.post_to_origin("https://nowhere", make_notification("app", "ping")) is False
        assert plugin_a.sent == []
        assert len(plugin_b.sent) == 1

    async def test_post_preencoded_payload(self, broker, plugin_a):
        payload = json.dumps({"action": "notification", "key": "k", "type": "t", "value": []})
        assert await broker.post("A", payload) is True
        assert plugin_a.sent == [payload]

    async def test_mismatched_origin_is_a_noop(self, broker):
        transport = RecordingTransport("https://elsewhere")
        broker.register(PluginDescriptor("A", "https://a"), transport)

        assert await broker.notify("A", "app", "ping") is False
        assert transport.sent == []

    async def test_failing_transport_does_not_break_broker(self, broker, plugin_b):
        async def explode(payload):
            raise TransportClosed("gone")

        from pluginbroker.transport.base import CallbackTransport

        broker.register(PluginDescriptor("A", "https://a"), CallbackTransport("https://a", explode))

        assert await broker.broadcast_notification("app", "ping") == 1
        assert len(plugin_b.sent) == 1

    async def test_notification_interceptor_can_rewrite_and_block(self, broker, plugin_a):
        class Redact(NotificationInterceptor):
            async def intercept_notification(self, notification):
                if notification.type == "secret":
                    return InterceptorResult.block("secret")
                if notification.type == "newTransaction":
                    return InterceptorResult(modified=make_notification(
                        notification.key, notification.type, "redacted"
                    ))
                return InterceptorResult()

        broker.interceptors.register_notification_interceptor(Redact("redact"))

        assert await broker.broadcast_notification("app", "secret") == 0
        await broker.broadcast_notification("txlistener", "newTransaction", {"from": "0xabc"})

        assert plugin_a.messages == [{
            "action": "notification",
            "key": "txlistener",
            "type": "newTransaction",
            "value": ["redacted"],
        }]

    async def test_interceptor_errors_are_skipped(self, broker, plugin_a):
        class Broken(NotificationInterceptor):
            async def intercept_notification(self, notification):
                raise RuntimeError("bug")

        broker.interceptors.register_notification_interceptor(Broken("broken"))

        assert await broker.broadcast_notification("app", "ping") == 1


class TestRegistration:
    async def test_reregister_makes_old_origin_untrusted(self, broker, endpoints, plugin_a):
        endpoints.register("k", "t", lambda title: title)
        moved = RecordingTransport("https://a-new")
        broker.register(PluginDescriptor("A", "https://a-new"), moved)

        await broker.on_message("https://a", request(1, "k", "t"))
        await broker.on_message("https://a-new", request(2, "k", "t"))
        await broker.drain()

        assert plugin_a.sent == []
        assert [m["id"] for m in moved.messages] == [2]

    async def test_plugin_notifications_reach_event_bus(self, endpoints, desc_a):
        bus = EventBus()
        broker = Broker(endpoints=endpoints, event_bus=bus)
        broker.register(desc_a, RecordingTransport(desc_a.url))
        received = []
        bus.subscribe("plugin.editor.highlight", lambda event: received.append(event))

        await broker.on_message(
            "https://a",
            {"action": "notification", "key": "editor", "type": "highlight", "value": [1, 2]},
        )

        assert len(received) == 1
        assert received[0].args == (1, 2)
        assert received[0].source == "A"

    def test_stats(self, broker, plugin_a):
        stats = broker.get_stats()
        assert stats["registry"]["plugins"] == 1
        assert stats["in_focus"] is None
