"""Tests for the plugin registry."""

import random

import pytest

from pluginbroker.plugins.registry import PluginDescriptor, PluginRegistry
from pluginbroker.protocol.errors import RegistryInconsistency


@pytest.fixture
def registry():
    return PluginRegistry()


def test_register_and_resolve(registry):
    registry.register(PluginDescriptor("A", "https://a"), "handle-a")

    assert registry.resolve("https://a") == "A"
    assert registry.lookup_transport("A") == "handle-a"
    assert "A" in registry
    assert len(registry) == 1


def test_unknown_origin_is_untrusted(registry):
    registry.register(PluginDescriptor("A", "https://a"), "handle-a")
    assert registry.resolve("https://evil") is None
    assert registry.lookup_transport("Z") is None


def test_reregister_replaces_transport(registry):
    registry.register(PluginDescriptor("A", "https://a"), "old")
    registry.register(PluginDescriptor("A", "https://a"), "new")

    assert registry.lookup_transport("A") == "new"
    registry.check_consistency()


def test_reregister_under_new_origin_orphans_old_origin(registry):
    # The old binding is dropped without notifying anyone
    registry.register(PluginDescriptor("A", "https://a"), "h1")
    registry.register(PluginDescriptor("A", "https://a2"), "h2")

    assert registry.resolve("https://a") is None
    assert registry.resolve("https://a2") == "A"
    registry.check_consistency()


def test_shared_origin_evicts_previous_holder(registry):
    registry.register(PluginDescriptor("A", "https://shared"), "h1")
    registry.register(PluginDescriptor("B", "https://shared"), "h2")

    assert registry.resolve("https://shared") == "B"
    assert "A" not in registry
    registry.check_consistency()


def test_unregister(registry):
    desc = PluginDescriptor("A", "https://a")
    registry.register(desc, "h")

    removed = registry.unregister(desc)

    assert removed.title == "A"
    assert registry.resolve("https://a") is None
    assert "A" not in registry
    registry.check_consistency()


def test_unregister_absent_is_noop(registry):
    registry.register(PluginDescriptor("A", "https://a"), "h")
    assert registry.unregister(PluginDescriptor("Z", "https://z")) is None
    assert registry.titles() == ["A"]


def test_unregister_with_stale_url_uses_recorded_origin(registry):
    registry.register(PluginDescriptor("A", "https://a2"), "h")

    registry.unregister(PluginDescriptor("A", "https://a"))

    assert registry.resolve("https://a2") is None
    registry.check_consistency()


def test_unregister_does_not_touch_other_plugins_origin(registry):
    registry.register(PluginDescriptor("A", "https://a"), "h")
    registry.register(PluginDescriptor("B", "https://b"), "h")

    registry.unregister(PluginDescriptor("A", "https://b"))

    assert registry.resolve("https://b") == "B"
    registry.check_consistency()


def test_empty_descriptor_rejected(registry):
    with pytest.raises(ValueError):
        registry.register(PluginDescriptor("", "https://a"), "h")


def test_check_consistency_detects_corruption(registry):
    registry.register(PluginDescriptor("A", "https://a"), "h")
    registry._origins["https://a"] = "B"
    with pytest.raises(RegistryInconsistency):
        registry.check_consistency()


def test_mappings_stay_consistent_under_random_operations(registry):
    rng = random.Random(1234)
    titles = ["A", "B", "C", "D"]
    origins = ["https://1", "https://2", "https://3", "https://4", "https://5"]

    for _ in range(500):
        desc = PluginDescriptor(rng.choice(titles), rng.choice(origins))
        if rng.random() < 0.6:
            registry.register(desc, object())
        else:
            registry.unregister(desc)
        registry.check_consistency()
        for title in registry.titles():
            assert registry.resolve(registry.get(title).origin) == title


def test_descriptor_from_dict():
    desc = PluginDescriptor.from_dict({"title": "A", "url": "https://a"})
    assert desc.to_dict() == {"title": "A", "url": "https://a"}
