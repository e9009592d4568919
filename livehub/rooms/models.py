"""Room session state records."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class RoomStatus(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


# Statuses with an adapter operation outstanding
PENDING_STATUSES = frozenset({RoomStatus.CONNECTING, RoomStatus.RECONNECTING})


# Mutable: RoomSession updates fields in place, each assignment validated.
class RoomInfo(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    room_id: str
    status: RoomStatus = RoomStatus.IDLE
    event_count: int = 0
    connected_at: datetime | None = None
    last_event_at: datetime | None = None
    reconnect_attempts: int = 0
    priority: int = 0
    label: str = ""
    viewer_count: int | None = None
