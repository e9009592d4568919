"""Lightweight event bus connecting rooms, plugins and the bridge."""

from collections.abc import Callable, Coroutine, Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()

# Event name constants
ROOM_ADDED = "room.added"
ROOM_REMOVED = "room.removed"
ROOM_STATUS_CHANGED = "room.status_changed"
ROOM_EVENT = "room.event"
ROOM_ERROR = "room.error"
ROOM_PRIORITY_CHANGED = "room.priority_changed"
ROOM_LABEL_CHANGED = "room.label_changed"
ROOM_VIEWERS_CHANGED = "room.viewers_changed"
ROOM_RECONNECT_FAILED = "room.reconnect_failed"
PLUGIN_LOADED = "plugin.loaded"
PLUGIN_UNLOADED = "plugin.unloaded"
PLUGIN_FAULT = "plugin.fault"
PLUGIN_SUSPENDED = "plugin.suspended"
POPUP_OPENED = "popup.opened"
POPUP_CLOSED = "popup.closed"

# Events after which the readonly projection must be rebuilt
ROOM_STATE_EVENTS = (
    ROOM_ADDED,
    ROOM_REMOVED,
    ROOM_STATUS_CHANGED,
    ROOM_PRIORITY_CHANGED,
    ROOM_LABEL_CHANGED,
    ROOM_VIEWERS_CHANGED,
)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


def _names(names: str | Iterable[str]) -> tuple[str, ...]:
    return (names,) if isinstance(names, str) else tuple(names)


class EventBus:
    """In-process pub/sub. Handlers run sequentially in subscription order;
    a failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}

    def subscribe(self, names: str | Iterable[str], handler: EventHandler) -> None:
        for name in _names(names):
            self._subscribers.setdefault(name, []).append(handler)

    def unsubscribe(self, names: str | Iterable[str], handler: EventHandler) -> None:
        for name in _names(names):
            subscribers = self._subscribers.get(name)
            if subscribers and handler in subscribers:
                subscribers.remove(handler)

    def handler_count(self, name: str) -> int:
        return len(self._subscribers.get(name, ()))

    async def emit(self, event: Event) -> None:
        # Snapshot so handlers may unsubscribe while the event is in flight
        for handler in tuple(self._subscribers.get(event.name, ())):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_name=event.name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
