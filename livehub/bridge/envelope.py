"""Typed envelopes exchanged between the host and plugin contexts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Lifecycle events (host -> plugin notifications only)
WINDOW_OPENED = "window-opened"
WINDOW_CLOSED = "window-closed"
PLUGIN_RELOADED = "plugin-reloaded"

# Data events
READONLY_STORE_INIT = "readonly-store-init"
READONLY_STORE_UPDATE = "readonly-store-update"
ROOM_EVENT = "room-event"

EnvelopeKind = Literal["lifecycle", "data"]


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: EnvelopeKind
    event: str
    plugin_id: str
    popup_id: str | None = None
    payload: Any = None
    # Position in the receiving channel's stream, assigned on delivery
    seq: int = 0

    @classmethod
    def lifecycle(
        cls,
        event: str,
        plugin_id: str,
        popup_id: str | None = None,
        payload: Any = None,
    ) -> Envelope:
        return cls(
            kind="lifecycle",
            event=event,
            plugin_id=plugin_id,
            popup_id=popup_id,
            payload=payload,
        )

    @classmethod
    def data(
        cls,
        event: str,
        plugin_id: str,
        payload: Any = None,
        popup_id: str | None = None,
    ) -> Envelope:
        return cls(
            kind="data",
            event=event,
            plugin_id=plugin_id,
            popup_id=popup_id,
            payload=payload,
        )

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": "window-event",
            "eventType": self.kind,
            "event": self.event,
            "pluginId": self.plugin_id,
        }
        if self.popup_id is not None:
            wire["popupId"] = self.popup_id
        if self.payload is not None:
            wire["payload"] = self.payload
        return wire


class PluginContext(BaseModel):
    """Init-time context handed to a plugin channel.

    ``readonly_store`` is the wire form of the rooms projection at the moment
    the channel opened; later changes arrive as ``readonly-store-update``.
    """

    model_config = ConfigDict(frozen=True)

    plugin_id: str
    popup_id: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    readonly_store: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "pluginId": self.plugin_id,
            "popupId": self.popup_id,
            "capabilities": list(self.capabilities),
            "readonlyStore": self.readonly_store,
        }
