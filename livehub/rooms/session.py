"""Room session: one supervised event source and its reconnect state machine.

A session owns at most one adapter at a time. Every adapter operation runs in
an attempt task tagged with the session's generation; ``disconnect`` bumps the
generation and cancels the task, so a late result from a torn-down attempt is
discarded instead of resurrecting the session.
"""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict

from livehub.core.events import (
    ROOM_ERROR,
    ROOM_EVENT,
    ROOM_LABEL_CHANGED,
    ROOM_PRIORITY_CHANGED,
    ROOM_RECONNECT_FAILED,
    ROOM_STATUS_CHANGED,
    ROOM_VIEWERS_CHANGED,
    Event,
)
from livehub.core.results import ErrorCode, RoomResult
from livehub.exceptions import AdapterError, AdapterTimeoutError
from livehub.rooms.models import PENDING_STATUSES, RoomInfo, RoomStatus
from livehub.rooms.projection import RoomView

if TYPE_CHECKING:
    from livehub.core.config import LivehubConfig
    from livehub.core.events import EventBus
    from livehub.rooms.adapter import AdapterFactory, BaseEventSource, RawEvent

logger = structlog.get_logger()

_MAX_BACKOFF_EXPONENT = 32


class ReconnectPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_delay: float = 1.0
    max_delay: float = 300.0
    max_attempts: int = 10
    jitter: float = 0.1
    adapter_timeout: float = 15.0

    @classmethod
    def from_config(cls, config: LivehubConfig) -> ReconnectPolicy:
        return cls(
            base_delay=config.reconnect_base_delay_seconds,
            max_delay=config.reconnect_max_delay_seconds,
            max_attempts=config.reconnect_max_attempts,
            jitter=config.reconnect_jitter,
            adapter_timeout=config.adapter_timeout_seconds,
        )

    def base_delay_for(self, attempts: int) -> float:
        """Un-jittered delay after ``attempts`` consecutive failures."""
        exponent = min(max(attempts, 0), _MAX_BACKOFF_EXPONENT)
        return min(self.base_delay * (2**exponent), self.max_delay)

    def delay_for(self, attempts: int, rng: random.Random | None = None) -> float:
        # Jitter only stretches the delay, by at most a factor of two, so the
        # sequence stays non-decreasing and never exceeds max_delay.
        delay = self.base_delay_for(attempts)
        if self.jitter:
            roll = rng.random() if rng is not None else random.random()
            delay = min(delay * (1.0 + self.jitter * roll), self.max_delay)
        return delay


class RoomSession:
    def __init__(
        self,
        room_id: str,
        adapter_factory: AdapterFactory,
        event_bus: EventBus,
        policy: ReconnectPolicy | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.info = RoomInfo(room_id=room_id)
        self._factory = adapter_factory
        self._bus = event_bus
        self._policy = policy or ReconnectPolicy()
        self._rng = rng
        self._lock = asyncio.Lock()
        self._adapter: BaseEventSource | None = None
        self._attempt_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._last_error: str | None = None

    @property
    def room_id(self) -> str:
        return self.info.room_id

    @property
    def status(self) -> RoomStatus:
        return self.info.status

    @property
    def has_adapter(self) -> bool:
        return self._adapter is not None

    def view(self) -> RoomView:
        return RoomView.from_info(self.info)

    # -- operator control ---------------------------------------------------

    async def connect(self) -> RoomResult:
        async with self._lock:
            status = self.info.status
            if status == RoomStatus.CONNECTED:
                return RoomResult.fail(
                    self.room_id,
                    ErrorCode.ALREADY_CONNECTED,
                    "Room is already connected",
                    status=status.value,
                )
            if status in PENDING_STATUSES:
                logger.debug(
                    "room_connect_in_flight", room_id=self.room_id, status=status.value
                )
                return RoomResult.ok(self.room_id, status=status.value)
            task = await self._begin_fresh()
        return await self._await_outcome(task)

    async def restart(self) -> RoomResult:
        """Tear down whatever is running and connect from scratch."""
        async with self._lock:
            stale = await self._teardown()
            task = await self._begin_fresh()
        if stale is not None:
            await asyncio.wait({stale})
        return await self._await_outcome(task)

    async def disconnect(self) -> RoomResult:
        async with self._lock:
            if self.info.status == RoomStatus.IDLE:
                return RoomResult.ok(self.room_id, status=RoomStatus.IDLE.value)
            stale = await self._teardown()
            await self._set_status(RoomStatus.DISCONNECTED)
        if stale is not None:
            await asyncio.wait({stale})
        logger.info(
            "room_disconnected",
            room_id=self.room_id,
            event_count=self.info.event_count,
            reconnect_attempts=self.info.reconnect_attempts,
        )
        return RoomResult.ok(self.room_id, status=RoomStatus.DISCONNECTED.value)

    async def set_priority(self, priority: int) -> None:
        async with self._lock:
            self.info.priority = priority
        await self._bus.emit(
            Event(
                name=ROOM_PRIORITY_CHANGED,
                data={"room_id": self.room_id, "priority": priority},
            )
        )

    async def set_label(self, label: str) -> None:
        async with self._lock:
            self.info.label = label
        await self._bus.emit(
            Event(name=ROOM_LABEL_CHANGED, data={"room_id": self.room_id, "label": label})
        )

    async def set_viewers(self, count: int | None) -> None:
        async with self._lock:
            self.info.viewer_count = count
        await self._bus.emit(
            Event(
                name=ROOM_VIEWERS_CHANGED,
                data={"room_id": self.room_id, "viewer_count": count},
            )
        )

    # -- state machine --------------------------------------------------------

    async def _begin_fresh(self) -> asyncio.Task[None]:
        self._generation += 1
        self.info.event_count = 0
        self.info.reconnect_attempts = 0
        self._last_error = None
        await self._set_status(RoomStatus.CONNECTING)
        return self._schedule_attempt(0.0)

    def _schedule_attempt(self, delay: float) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._run_attempt(self._generation, delay),
            name=f"room-attempt:{self.room_id}",
        )
        self._attempt_task = task
        return task

    async def _await_outcome(self, task: asyncio.Task[None]) -> RoomResult:
        await asyncio.wait({task})
        status = self.info.status
        if status == RoomStatus.CONNECTED:
            return RoomResult.ok(self.room_id, status=status.value)
        if status == RoomStatus.FAILED:
            return RoomResult.fail(
                self.room_id,
                ErrorCode.RETRIES_EXHAUSTED,
                self._last_error or "Reconnect attempts exhausted",
                status=status.value,
            )
        if status == RoomStatus.DISCONNECTED:
            return RoomResult.fail(
                self.room_id,
                ErrorCode.ADAPTER_FAILURE,
                "Connection attempt cancelled by disconnect",
                status=status.value,
            )
        return RoomResult.fail(
            self.room_id,
            ErrorCode.ADAPTER_FAILURE,
            self._last_error or "Event source failed to connect",
            status=status.value,
        )

    async def _run_attempt(self, generation: int, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)

        async with self._lock:
            if generation != self._generation:
                return
            try:
                adapter = self._factory(self.room_id)
            except Exception as e:
                logger.error(
                    "room_adapter_create_failed", room_id=self.room_id, error=str(e)
                )
                await self._handle_failure(e)
                return
            adapter.set_event_handler(partial(self._on_event, adapter))
            adapter.set_drop_handler(partial(self._on_drop, adapter))
            self._adapter = adapter

        logger.debug(
            "room_connecting",
            room_id=self.room_id,
            attempt=self.info.reconnect_attempts,
        )
        error: BaseException | None = None
        try:
            await asyncio.wait_for(
                adapter.connect(), timeout=self._policy.adapter_timeout
            )
        except TimeoutError:
            error = AdapterTimeoutError(
                f"connect timed out after {self._policy.adapter_timeout}s"
            )
        except Exception as e:
            error = e

        async with self._lock:
            if generation != self._generation or adapter is not self._adapter:
                # Torn down while the attempt was in flight; teardown already
                # released this adapter.
                logger.debug("room_stale_attempt_ignored", room_id=self.room_id)
                return
            if error is None:
                self.info.connected_at = datetime.now(UTC)
                self.info.reconnect_attempts = 0
                self._last_error = None
                await self._set_status(RoomStatus.CONNECTED)
                logger.info("room_connected", room_id=self.room_id)
                return
            self._adapter = None
            logger.warning(
                "room_connect_failed",
                room_id=self.room_id,
                attempt=self.info.reconnect_attempts,
                error=str(error),
            )
            await self._release(adapter)
            await self._handle_failure(error)

    async def _handle_failure(self, error: BaseException) -> None:
        """Move to RECONNECTING with a scheduled retry, or to FAILED. Lock held."""
        self._last_error = str(error) or type(error).__name__
        if self.info.reconnect_attempts >= self._policy.max_attempts:
            self._attempt_task = None
            await self._set_status(RoomStatus.FAILED)
            logger.error(
                "room_reconnect_exhausted",
                room_id=self.room_id,
                attempts=self.info.reconnect_attempts,
                error=self._last_error,
            )
            await self._bus.emit(
                Event(
                    name=ROOM_RECONNECT_FAILED,
                    data={
                        "room_id": self.room_id,
                        "attempts": self.info.reconnect_attempts,
                        "error": self._last_error,
                    },
                )
            )
            return

        self.info.reconnect_attempts += 1
        delay = self._policy.delay_for(self.info.reconnect_attempts - 1, self._rng)
        await self._set_status(RoomStatus.RECONNECTING)
        logger.info(
            "room_reconnect_scheduled",
            room_id=self.room_id,
            attempt=self.info.reconnect_attempts,
            delay=round(delay, 3),
        )
        self._schedule_attempt(delay)

    async def _teardown(self) -> asyncio.Task[None] | None:
        """Invalidate in-flight work and release the adapter. Lock held.

        Returns the cancelled attempt task so callers can wait for it after
        releasing the lock.
        """
        self._generation += 1
        task, self._attempt_task = self._attempt_task, None
        if task is not None and (task.done() or task is asyncio.current_task()):
            task = None
        if task is not None:
            task.cancel()
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await self._release(adapter)
        return task

    async def _release(self, adapter: BaseEventSource) -> None:
        try:
            await asyncio.wait_for(
                adapter.disconnect(), timeout=self._policy.adapter_timeout
            )
        except Exception as e:
            logger.warning(
                "room_adapter_release_failed", room_id=self.room_id, error=str(e)
            )

    async def _set_status(self, status: RoomStatus) -> None:
        previous = self.info.status
        if previous == status:
            return
        self.info.status = status
        await self._bus.emit(
            Event(
                name=ROOM_STATUS_CHANGED,
                data={
                    "room_id": self.room_id,
                    "status": status.value,
                    "previous": previous.value,
                },
            )
        )

    # -- adapter callbacks ------------------------------------------------------

    async def _on_event(self, adapter: BaseEventSource, event: RawEvent) -> None:
        if adapter is not self._adapter or self.info.status != RoomStatus.CONNECTED:
            logger.debug(
                "room_event_dropped",
                room_id=self.room_id,
                status=self.info.status.value,
            )
            return
        now = datetime.now(UTC)
        self.info.event_count += 1
        self.info.last_event_at = now
        enriched = dict(event)
        enriched["room_id"] = self.room_id
        enriched.setdefault("received_at", now.isoformat())
        await self._bus.emit(
            Event(name=ROOM_EVENT, data={"room_id": self.room_id, "event": enriched})
        )

    async def _on_drop(
        self, adapter: BaseEventSource, error: BaseException | None
    ) -> None:
        # Released adapters are detached before their disconnect runs
        if adapter is not self._adapter:
            return
        async with self._lock:
            if adapter is not self._adapter or self.info.status != RoomStatus.CONNECTED:
                return
            self._adapter = None
            reason = error or AdapterError("connection dropped")
            logger.warning(
                "room_connection_dropped", room_id=self.room_id, error=str(reason)
            )
            await self._bus.emit(
                Event(
                    name=ROOM_ERROR,
                    data={"room_id": self.room_id, "error": str(reason)},
                )
            )
            await self._release(adapter)
            await self._handle_failure(reason)
