"""Tests for plugin registry."""

from __future__ import annotations

import pytest

from livehub.exceptions import InvalidPluginError, PluginError
from livehub.plugins.registry import PluginRegistry
from tests.conftest import StubPlugin, make_definition


@pytest.fixture
def registry():
    return PluginRegistry()


class TestPluginRegistry:
    def test_register_and_get(self, registry):
        definition = make_definition("stub", StubPlugin())
        registry.register(definition)
        assert registry.get("stub") is definition
        assert "stub" in registry

    def test_get_nonexistent(self, registry):
        assert registry.get("nope") is None
        assert "nope" not in registry

    def test_duplicate_registration_raises(self, registry):
        registry.register(make_definition("stub", StubPlugin()))
        with pytest.raises(InvalidPluginError, match="already registered"):
            registry.register(make_definition("stub", StubPlugin()))

    def test_invalid_plugin_is_plugin_error(self):
        assert issubclass(InvalidPluginError, PluginError)

    def test_definitions_in_registration_order(self, registry):
        a = make_definition("a", StubPlugin())
        b = make_definition("b", StubPlugin())
        registry.register(a)
        registry.register(b)
        assert registry.definitions == [a, b]

    def test_unregister(self, registry):
        definition = make_definition("stub", StubPlugin())
        registry.register(definition)
        assert registry.unregister("stub") is definition
        assert registry.unregister("stub") is None
        assert registry.definitions == []
