"""Tests for the plugin contract types."""

import pytest

from livehub.exceptions import InvalidPluginError
from livehub.plugins.base import (
    Capability,
    LivehubPlugin,
    PluginDefinition,
    PluginHooks,
    PluginManifest,
)
from tests.conftest import PassivePlugin, StubPlugin


class TestContract:
    def test_stub_satisfies_protocol(self):
        assert isinstance(StubPlugin(), LivehubPlugin)

    def test_passive_plugin_lacks_handler(self):
        assert not isinstance(PassivePlugin(), LivehubPlugin)
        assert PluginHooks.from_object(PassivePlugin()).passive

    def test_missing_exports_listed(self):
        with pytest.raises(InvalidPluginError, match="init, cleanup"):
            PluginHooks.from_object(object())

    def test_non_callable_handler(self):
        class Broken(PassivePlugin):
            handle_message = "nope"

        with pytest.raises(InvalidPluginError, match="not callable"):
            PluginHooks.from_object(Broken())


class TestDefinition:
    def test_plugin_id_from_manifest(self):
        manifest = PluginManifest(id="demo", name="Demo", capabilities="window, ui")
        definition = PluginDefinition.from_object(manifest, StubPlugin())

        assert definition.plugin_id == "demo"
        assert definition.manifest.has(Capability.UI)
        assert not definition.manifest.has(Capability.ROOM_EVENTS)
        assert not definition.hooks.passive
