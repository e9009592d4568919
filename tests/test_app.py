"""Tests for the application bootstrap and hub lifecycle."""

from __future__ import annotations

import logging
import logging.handlers

import pytest
import structlog

from livehub.app import build_hub, configure_logging
from livehub.core.config import LivehubConfig
from livehub.exceptions import ConfigError
from livehub.plugins.instance import LifecycleState
from tests.conftest import MockEventSource, ScriptedFactory, StubPlugin, make_definition


def make_source(room_id):
    return MockEventSource(room_id)


@pytest.fixture
def quiet_config():
    return LivehubConfig(projection_refresh_seconds=0, load_builtin_plugins=False)


class TestBuildHub:
    def test_requires_adapter_factory(self, quiet_config):
        with pytest.raises(ConfigError, match="No event source configured"):
            build_hub(quiet_config)

    def test_adapter_factory_from_config(self):
        config = LivehubConfig(adapter_factory="tests.test_app:make_source")
        hub = build_hub(config)
        assert hub.rooms.room_count == 0

    def test_bad_adapter_factory_path(self):
        config = LivehubConfig(adapter_factory="no_colon_here")
        with pytest.raises(ConfigError, match="module:callable"):
            build_hub(config)

    @pytest.mark.asyncio
    async def test_startup_loads_builtin_and_given_plugins(self):
        config = LivehubConfig(projection_refresh_seconds=0)
        plugin = StubPlugin()
        hub = build_hub(
            config, ScriptedFactory(), plugins=[make_definition("extra", plugin)]
        )

        results = await hub.startup()
        try:
            assert all(r.ok for r in results)
            assert set(hub.plugins.plugin_ids) == {"base-example", "extra"}
            assert hub.plugins.state("extra") == LifecycleState.READY
        finally:
            await hub.shutdown()

        assert hub.plugins.plugin_ids == []
        assert plugin.calls == ["init", "cleanup"]

    @pytest.mark.asyncio
    async def test_end_to_end_room_and_plugin(self, quiet_config):
        factory = ScriptedFactory()
        hub = build_hub(quiet_config, factory, plugins=[make_definition("demo", StubPlugin())])
        await hub.startup()
        try:
            await hub.room_control.connect("A")
            await factory.latest("A").push({"type": "chat"})

            pong = await hub.plugin_control.send("demo", "ping", {})
            status = await hub.room_control.status("A")
        finally:
            await hub.shutdown()

        assert pong["ok"] is True
        assert status["eventCount"] == 1
        assert factory.live() == []

    @pytest.mark.asyncio
    async def test_shutdown_without_startup_is_noop(self, quiet_config):
        hub = build_hub(quiet_config, ScriptedFactory())
        await hub.shutdown()
        assert not hub.started


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_console_only(self, restore_logging):
        configure_logging(LivehubConfig(log_level="DEBUG"))
        root = restore_logging
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_file_handler_when_log_dir_set(self, tmp_path, restore_logging):
        configure_logging(LivehubConfig(log_dir=tmp_path / "logs"))
        root = restore_logging
        file_handlers = [
            h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert (tmp_path / "logs").is_dir()