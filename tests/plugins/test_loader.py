"""Tests for plugin discovery and loading."""

from __future__ import annotations

import textwrap

import pytest

from livehub.exceptions import InvalidPluginError
from livehub.plugins.base import Capability
from livehub.plugins.loader import discover, load_manifest, load_plugin_dir

GOOD_PLUGIN = """
async def init():
    return {"ok": True}

async def cleanup():
    return {"ok": True}

async def handle_message(type, payload):
    return {"type": type}
"""


def write_plugin(root, name, manifest, source=GOOD_PLUGIN, filename="plugin.py"):
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    (plugin_dir / "plugin.yaml").write_text(textwrap.dedent(manifest))
    if source is not None:
        (plugin_dir / filename).write_text(textwrap.dedent(source))
    return plugin_dir


class TestManifest:
    def test_load_manifest(self, tmp_path):
        plugin_dir = write_plugin(
            tmp_path,
            "chat",
            """
            id: chat-overlay
            name: Chat Overlay
            version: 1.2.0
            capabilities: [room-events, overlay]
            """,
        )
        manifest = load_manifest(plugin_dir)

        assert manifest.id == "chat-overlay"
        assert manifest.version == "1.2.0"
        assert manifest.has(Capability.ROOM_EVENTS)
        assert manifest.has(Capability.OVERLAY)
        assert not manifest.has(Capability.WINDOW)

    def test_capabilities_comma_separated(self, tmp_path):
        plugin_dir = write_plugin(
            tmp_path, "p", "id: p\nname: P\ncapabilities: 'window, ui'\n"
        )
        manifest = load_manifest(plugin_dir)
        assert manifest.capabilities == {Capability.WINDOW, Capability.UI}

    def test_invalid_yaml(self, tmp_path):
        plugin_dir = write_plugin(tmp_path, "p", "id: [unclosed\n")
        with pytest.raises(InvalidPluginError, match="invalid YAML"):
            load_manifest(plugin_dir)

    def test_manifest_not_a_mapping(self, tmp_path):
        plugin_dir = write_plugin(tmp_path, "p", "- just\n- a list\n")
        with pytest.raises(InvalidPluginError, match="must contain a mapping"):
            load_manifest(plugin_dir)

    def test_unknown_capability(self, tmp_path):
        plugin_dir = write_plugin(
            tmp_path, "p", "id: p\nname: P\ncapabilities: [telepathy]\n"
        )
        with pytest.raises(InvalidPluginError, match="invalid manifest"):
            load_manifest(plugin_dir)

    def test_bad_id(self, tmp_path):
        plugin_dir = write_plugin(tmp_path, "p", "id: '../escape'\nname: P\n")
        with pytest.raises(InvalidPluginError):
            load_manifest(plugin_dir)


class TestLoadPluginDir:
    def test_module_plugin(self, tmp_path):
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-good\nname: Good\n")
        definition = load_plugin_dir(plugin_dir)

        assert definition.plugin_id == "loader-good"
        assert definition.source == plugin_dir
        assert not definition.hooks.passive

    def test_missing_handler_is_passive(self, tmp_path):
        source = """
        def init():
            return {"ok": True}

        def cleanup():
            return {"ok": True}
        """
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-passive\nname: P\n", source)
        assert load_plugin_dir(plugin_dir).hooks.passive

    def test_camel_case_handler_alias(self, tmp_path):
        source = """
        def init(): pass
        def cleanup(): pass
        def handleMessage(type, payload): return type
        """
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-camel\nname: P\n", source)
        assert not load_plugin_dir(plugin_dir).hooks.passive

    def test_missing_cleanup_rejected(self, tmp_path):
        source = "def init(): pass\n"
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-bad\nname: P\n", source)
        with pytest.raises(InvalidPluginError, match="missing required exports: cleanup"):
            load_plugin_dir(plugin_dir)

    def test_factory_product_used(self, tmp_path):
        source = """
        class Plugin:
            async def init(self): return {"ok": True}
            async def cleanup(self): return {"ok": True}
            async def handle_message(self, type, payload): return "factory"

        def create_plugin():
            return Plugin()
        """
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-factory\nname: P\n", source)
        definition = load_plugin_dir(plugin_dir)
        assert definition.hooks.handle_message.__self__.__class__.__name__ == "Plugin"

    def test_import_error(self, tmp_path):
        plugin_dir = write_plugin(
            tmp_path, "p", "id: loader-broken\nname: P\n", "raise RuntimeError('nope')\n"
        )
        with pytest.raises(InvalidPluginError, match="failed to import"):
            load_plugin_dir(plugin_dir)

    def test_missing_entry_module(self, tmp_path):
        plugin_dir = write_plugin(tmp_path, "p", "id: loader-none\nname: P\n", None)
        with pytest.raises(InvalidPluginError, match="entry module not found"):
            load_plugin_dir(plugin_dir)

    def test_entry_outside_directory_rejected(self, tmp_path):
        (tmp_path / "outside.py").write_text(GOOD_PLUGIN)
        plugin_dir = write_plugin(
            tmp_path, "p", "id: loader-escape\nname: P\nmain: ../outside.py\n", None
        )
        with pytest.raises(InvalidPluginError, match="escapes plugin directory"):
            load_plugin_dir(plugin_dir)

    def test_custom_main(self, tmp_path):
        plugin_dir = write_plugin(
            tmp_path,
            "p",
            "id: loader-main\nname: P\nmain: entry.py\n",
            filename="entry.py",
        )
        assert load_plugin_dir(plugin_dir).plugin_id == "loader-main"


class TestDiscover:
    def test_bad_plugin_does_not_stop_others(self, tmp_path):
        write_plugin(tmp_path, "a_good", "id: disc-good\nname: Good\n")
        write_plugin(tmp_path, "b_bad", "id: disc-bad\nname: Bad\n", "def init(): pass\n")
        (tmp_path / "not_a_plugin").mkdir()

        report = discover([tmp_path])

        assert [d.plugin_id for d in report.definitions] == ["disc-good"]
        assert len(report.failures) == 1
        assert report.failures[0].path.name == "b_bad"

    def test_missing_directory_skipped(self, tmp_path):
        report = discover([tmp_path / "missing"])
        assert report.definitions == []
        assert report.failures == []
