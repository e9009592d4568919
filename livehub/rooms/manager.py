"""Room connection manager: one supervised session per room."""

from __future__ import annotations

import asyncio
import math
from typing import TYPE_CHECKING, Any

import structlog

from livehub.core.events import ROOM_ADDED, ROOM_REMOVED, Event
from livehub.core.results import ErrorCode, RoomResult
from livehub.rooms.models import RoomStatus
from livehub.rooms.projection import RoomsProjection, RoomView, build_projection
from livehub.rooms.session import ReconnectPolicy, RoomSession

if TYPE_CHECKING:
    import random

    from livehub.core.config import LivehubConfig
    from livehub.core.events import EventBus
    from livehub.rooms.adapter import AdapterFactory

logger = structlog.get_logger()


class RoomConnectionManager:
    """Keyed collection of room sessions.

    Mutations on one room are serialized by that session's lock; operations
    on different rooms never wait on each other. Callers only ever receive
    ``RoomView``/``RoomsProjection`` copies, never the sessions themselves.
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        event_bus: EventBus,
        policy: ReconnectPolicy | None = None,
        *,
        max_rooms: int = 0,
        rng: random.Random | None = None,
    ) -> None:
        self._factory = adapter_factory
        self._bus = event_bus
        self._policy = policy or ReconnectPolicy()
        self._max_rooms = max_rooms
        self._rng = rng
        self._sessions: dict[str, RoomSession] = {}

    @classmethod
    def from_config(
        cls,
        config: LivehubConfig,
        adapter_factory: AdapterFactory,
        event_bus: EventBus,
    ) -> RoomConnectionManager:
        return cls(
            adapter_factory,
            event_bus,
            ReconnectPolicy.from_config(config),
            max_rooms=config.max_rooms,
        )

    @property
    def room_count(self) -> int:
        return len(self._sessions)

    @property
    def connected_count(self) -> int:
        return sum(
            1 for s in self._sessions.values() if s.status == RoomStatus.CONNECTED
        )

    def has_active_adapter(self, room_id: str) -> bool:
        session = self._sessions.get(room_id)
        return session is not None and session.has_adapter

    async def connect(self, room_id: str) -> RoomResult:
        if not room_id:
            return RoomResult.fail(
                room_id, ErrorCode.INVALID_ARGUMENT, "room_id must not be empty"
            )
        session = self._sessions.get(room_id)
        if session is None:
            if self._max_rooms and len(self._sessions) >= self._max_rooms:
                logger.warning(
                    "room_limit_reached", room_id=room_id, max_rooms=self._max_rooms
                )
                return RoomResult.fail(
                    room_id,
                    ErrorCode.LIMIT_REACHED,
                    f"Maximum number of rooms ({self._max_rooms}) reached",
                )
            session = RoomSession(
                room_id, self._factory, self._bus, self._policy, rng=self._rng
            )
            self._sessions[room_id] = session
            logger.info("room_added", room_id=room_id, room_count=len(self._sessions))
            await self._bus.emit(Event(name=ROOM_ADDED, data={"room_id": room_id}))

        result = await session.connect()
        if not result.success and result.code != ErrorCode.ALREADY_CONNECTED:
            logger.warning(
                "room_connect_unsuccessful",
                room_id=room_id,
                code=result.code,
                error=result.error,
            )
        return result

    async def disconnect(self, room_id: str) -> RoomResult:
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        return await session.disconnect()

    async def reconnect(self, room_id: str) -> RoomResult:
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        logger.info("room_manual_reconnect", room_id=room_id)
        return await session.restart()

    async def remove(self, room_id: str) -> RoomResult:
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        await session.disconnect()
        # A concurrent connect may have recreated the entry; only drop ours.
        if self._sessions.get(room_id) is session:
            del self._sessions[room_id]
        logger.info("room_removed", room_id=room_id, room_count=len(self._sessions))
        await self._bus.emit(Event(name=ROOM_REMOVED, data={"room_id": room_id}))
        return RoomResult.ok(room_id)

    def list(self) -> RoomsProjection:
        return build_projection(s.view() for s in self._sessions.values())

    def status(self, room_id: str) -> RoomView | None:
        session = self._sessions.get(room_id)
        return session.view() if session is not None else None

    async def set_priority(self, room_id: str, priority: Any) -> RoomResult:
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        value = _coerce_priority(priority)
        if value is None:
            return RoomResult.fail(
                room_id,
                ErrorCode.INVALID_ARGUMENT,
                f"priority must be a finite integer, got {priority!r}",
                status=session.status.value,
            )
        await session.set_priority(value)
        logger.info("room_priority_set", room_id=room_id, priority=value)
        return RoomResult.ok(room_id, status=session.status.value)

    async def set_label(self, room_id: str, label: Any) -> RoomResult:
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        if not isinstance(label, str):
            return RoomResult.fail(
                room_id,
                ErrorCode.INVALID_ARGUMENT,
                "label must be a string",
                status=session.status.value,
            )
        await session.set_label(label)
        logger.info("room_label_set", room_id=room_id, label=label)
        return RoomResult.ok(room_id, status=session.status.value)

    async def set_viewers(self, room_id: str, count: int | None) -> RoomResult:
        """Record the externally supplied viewer metric for a room."""
        session = self._sessions.get(room_id)
        if session is None:
            return _not_found(room_id)
        if count is not None and (
            not isinstance(count, int) or isinstance(count, bool) or count < 0
        ):
            return RoomResult.fail(
                room_id,
                ErrorCode.INVALID_ARGUMENT,
                "viewer count must be a non-negative integer",
                status=session.status.value,
            )
        await session.set_viewers(count)
        return RoomResult.ok(room_id, status=session.status.value)

    async def shutdown(self) -> None:
        logger.info("room_manager_shutting_down", room_count=len(self._sessions))
        sessions = list(self._sessions.values())
        results = await asyncio.gather(
            *(s.disconnect() for s in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "room_shutdown_disconnect_failed",
                    room_id=session.room_id,
                    error=str(result),
                )
        self._sessions.clear()
        logger.info("room_manager_shutdown_complete")


def _not_found(room_id: str) -> RoomResult:
    return RoomResult.fail(room_id, ErrorCode.NOT_FOUND, f"Room not found: {room_id}")


def _coerce_priority(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None
