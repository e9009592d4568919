"""Shared fixtures, mock event source and stub plugins for testing."""

from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

from livehub.bridge.bridge import MessageBridge
from livehub.core.config import LivehubConfig
from livehub.core.events import EventBus
from livehub.plugins.base import PluginDefinition, PluginManifest
from livehub.plugins.host import PluginHost
from livehub.rooms.adapter import BaseEventSource
from livehub.rooms.manager import RoomConnectionManager
from livehub.rooms.session import ReconnectPolicy


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Prevent .env file and shell env from leaking into tests."""
    monkeypatch.setitem(LivehubConfig.model_config, "env_file", None)
    for key in list(os.environ):
        if key.startswith("LIVEHUB_"):
            monkeypatch.delenv(key, raising=False)


class MockEventSource(BaseEventSource):
    """In-memory event source; ``fail`` makes connect raise, ``gate`` makes it wait."""

    def __init__(
        self,
        room_id: str,
        *,
        fail: BaseException | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        super().__init__(room_id)
        self.fail = fail
        self.gate = gate
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connected = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def push(self, event: dict[str, Any]) -> None:
        await self.emit_event(event)

    async def drop(self, error: BaseException | None = None) -> None:
        self.connected = False
        await self.emit_drop(error)


class ScriptedFactory:
    """Adapter factory whose connect outcomes follow a script.

    Each created source takes the next outcome from ``outcomes`` (``None``
    means success, an exception means failure); once the script runs out
    ``default`` applies.
    """

    def __init__(
        self,
        outcomes: list[BaseException | None] | None = None,
        default: BaseException | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.gate: asyncio.Event | None = None
        self.created: list[MockEventSource] = []

    def __call__(self, room_id: str) -> MockEventSource:
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        source = MockEventSource(room_id, fail=outcome, gate=self.gate)
        self.created.append(source)
        return source

    def latest(self, room_id: str | None = None) -> MockEventSource:
        sources = [s for s in self.created if room_id is None or s.room_id == room_id]
        return sources[-1]

    def live(self) -> list[MockEventSource]:
        return [s for s in self.created if s.connected]


class PassivePlugin:
    """Plugin exposing only the required lifecycle hooks."""

    def __init__(
        self,
        *,
        init_result: Any = None,
        init_error: Exception | None = None,
        init_delay: float = 0.0,
        cleanup_error: Exception | None = None,
    ) -> None:
        self.init_result = {"ok": True} if init_result is None else init_result
        self.init_error = init_error
        self.init_delay = init_delay
        self.cleanup_error = cleanup_error
        self.calls: list[str] = []

    async def init(self) -> Any:
        self.calls.append("init")
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_error is not None:
            raise self.init_error
        return self.init_result

    async def cleanup(self) -> Any:
        self.calls.append("cleanup")
        if self.cleanup_error is not None:
            raise self.cleanup_error
        return {"ok": True}


class StubPlugin(PassivePlugin):
    """Plugin with a message handler that echoes payloads."""

    def __init__(
        self,
        *,
        handler_error: Exception | None = None,
        handler_delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.handler_error = handler_error
        self.handler_delay = handler_delay
        self.messages: list[tuple[str, Any]] = []

    async def handle_message(self, type: str, payload: Any) -> Any:
        if self.handler_delay:
            await asyncio.sleep(self.handler_delay)
        if self.handler_error is not None:
            raise self.handler_error
        if type == "ping":
            return {"pong": True}
        self.messages.append((type, payload))
        return {"echo": payload}


def make_definition(
    plugin_id: str, target: Any, capabilities: tuple[str, ...] = ()
) -> PluginDefinition:
    manifest = PluginManifest(
        id=plugin_id, name=plugin_id.title(), capabilities=frozenset(capabilities)
    )
    return PluginDefinition.from_object(manifest, target)


@pytest.fixture
def config():
    return LivehubConfig()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def record_events(bus):
    """Subscribe a recorder to the named events and return its list."""

    def _record(*names: str) -> list:
        seen: list = []

        async def handler(event):
            seen.append(event)

        for name in names:
            bus.subscribe(name, handler)
        return seen

    return _record


@pytest.fixture
def fast_policy():
    return ReconnectPolicy(
        base_delay=0.001,
        max_delay=0.01,
        max_attempts=5,
        jitter=0.0,
        adapter_timeout=1.0,
    )


@pytest.fixture
def factory():
    return ScriptedFactory()


@pytest.fixture
def manager(factory, bus, fast_policy):
    return RoomConnectionManager(factory, bus, fast_policy)


@pytest.fixture
def bridge(manager, bus):
    return MessageBridge(manager.list, bus, refresh_interval=0, rate=0)


@pytest.fixture
def host(bridge, bus):
    return PluginHost(
        bridge,
        bus,
        init_timeout=0.5,
        cleanup_timeout=0.5,
        message_timeout=0.5,
    )


async def wait_for_status(manager, room_id, status, timeout=2.0):
    """Poll until the room reaches ``status``; fail the test on timeout."""

    async def _poll():
        while True:
            view = manager.status(room_id)
            if view is not None and view.status == status:
                return view
            await asyncio.sleep(0.001)

    return await asyncio.wait_for(_poll(), timeout)
