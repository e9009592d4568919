"""Abstract event source protocol, one live chat feed per room."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import Any

from livehub.exceptions import ConfigError

RawEvent = dict[str, Any]
EventCallback = Callable[[RawEvent], Coroutine[Any, Any, None]]
DropCallback = Callable[[BaseException | None], Coroutine[Any, Any, None]]


class BaseEventSource(ABC):
    """Connectable feed of raw room events.

    ``connect()`` returns once the feed is established and raises on failure.
    Afterwards the source pushes events through the registered event handler
    and reports a lost connection exactly once through the drop handler.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self._event_handler: EventCallback | None = None
        self._drop_handler: DropCallback | None = None

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    def set_event_handler(self, handler: EventCallback) -> None:
        """Register handler(event) for each raw event from the feed."""
        self._event_handler = handler

    def set_drop_handler(self, handler: DropCallback) -> None:
        """Register handler(error) for an unexpected loss of the feed."""
        self._drop_handler = handler

    async def emit_event(self, event: RawEvent) -> None:
        if self._event_handler is not None:
            await self._event_handler(event)

    async def emit_drop(self, error: BaseException | None = None) -> None:
        if self._drop_handler is not None:
            await self._drop_handler(error)


AdapterFactory = Callable[[str], BaseEventSource]


def load_adapter_factory(path: str) -> AdapterFactory:
    """Resolve a ``module:attribute`` path to an adapter factory."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"adapter_factory must look like 'module:callable': {path}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import adapter module {module_name}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{path} is not a callable adapter factory")
    return factory  # type: ignore[no-any-return]
