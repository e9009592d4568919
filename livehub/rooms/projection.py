"""Immutable snapshots of room state, safe to hand to plugin code."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from livehub.rooms.models import RoomInfo, RoomStatus


class RoomView(BaseModel):
    """Public fields of one room session, copied out of the manager."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    status: RoomStatus
    event_count: int = 0
    connected_at: datetime | None = None
    last_event_at: datetime | None = None
    reconnect_attempts: int = 0
    priority: int = 0
    label: str = ""
    viewer_count: int | None = None

    @classmethod
    def from_info(cls, info: RoomInfo) -> RoomView:
        return cls(**info.model_dump())

    def to_wire(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "status": self.status.value,
            "eventCount": self.event_count,
            "connectedAt": _iso(self.connected_at),
            "lastEventAt": _iso(self.last_event_at),
            "reconnectAttempts": self.reconnect_attempts,
            "priority": self.priority,
            "label": self.label,
            "viewerCount": self.viewer_count,
        }


class RoomsProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    rooms: tuple[RoomView, ...] = ()
    live_rooms_count: int = 0
    total_viewers: int = 0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def get(self, room_id: str) -> RoomView | None:
        for room in self.rooms:
            if room.room_id == room_id:
                return room
        return None

    def to_wire(self) -> dict[str, Any]:
        """Plain JSON-ready dict; every call returns a fresh structure."""
        return {
            "rooms": [room.to_wire() for room in self.rooms],
            "liveRoomsCount": self.live_rooms_count,
            "totalViewers": self.total_viewers,
            "generatedAt": self.generated_at.isoformat(),
        }


def build_projection(views: Iterable[RoomView]) -> RoomsProjection:
    rooms = tuple(views)
    return RoomsProjection(
        rooms=rooms,
        live_rooms_count=sum(1 for r in rooms if r.status == RoomStatus.CONNECTED),
        total_viewers=sum(r.viewer_count or 0 for r in rooms),
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
