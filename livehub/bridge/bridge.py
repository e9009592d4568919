"""Secure message bridge: the only path between the host and plugin code.

Each plugin context (the main context and every popup) gets its own
addressed ``Channel``. Delivery is synchronous fan-out into the channels'
bounded FIFO queues, so envelopes for one plugin arrive in the order their
triggers happened. The plugin host pumps the main-context channel into the
plugin's message handler; popup channels are read by the popup windows.
Every delivered payload is a fresh deep copy; plugins never see a reference
that aliases host state.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

import structlog

from livehub.bridge import envelope as env
from livehub.bridge.envelope import Envelope, PluginContext
from livehub.bridge.ratelimit import AdmissionBudget
from livehub.core.events import ROOM_EVENT, ROOM_STATE_EVENTS, Event
from livehub.core.results import ErrorCode
from livehub.exceptions import BridgeError
from livehub.plugins.base import Capability

if TYPE_CHECKING:
    from livehub.core.config import LivehubConfig
    from livehub.core.events import EventBus
    from livehub.rooms.projection import RoomsProjection

logger = structlog.get_logger()

ProjectionSource = Callable[[], "RoomsProjection"]


class Channel:
    """Ordered, addressed queue of envelopes for one plugin context.

    The queue holds at most ``capacity`` envelopes; when full, the oldest
    pending envelope is dropped to make room. Consumers call ``task_done``
    once per envelope returned by ``receive`` so ``join`` can report when
    everything queued has been handled.
    """

    def __init__(
        self,
        plugin_id: str,
        popup_id: str | None = None,
        budget: AdmissionBudget | None = None,
        *,
        capacity: int = 1000,
    ) -> None:
        self.plugin_id = plugin_id
        self.popup_id = popup_id
        self.budget = budget
        self.capacity = max(capacity, 1)
        self.dropped = 0
        # One extra slot so the close sentinel always fits
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue(self.capacity + 1)
        self._next_seq = 1
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def put(self, envelope: Envelope) -> bool:
        if self._closed:
            return False
        stamped = envelope.model_copy(
            update={
                "popup_id": envelope.popup_id or self.popup_id,
                "payload": copy.deepcopy(envelope.payload),
                "seq": self._next_seq,
            }
        )
        self._next_seq += 1
        if self._queue.qsize() >= self.capacity:
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % self.capacity == 0:
                logger.warning(
                    "bridge_channel_overflow",
                    plugin_id=self.plugin_id,
                    popup_id=self.popup_id,
                    dropped=self.dropped,
                )
        self._queue.put_nowait(stamped)
        return True

    async def receive(self) -> Envelope | None:
        """Next envelope in order, or ``None`` once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is None:
            self._queue.task_done()
        return item

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def drain(self) -> list[Envelope]:
        items: list[Envelope] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is not None:
                items.append(item)
        return items

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[Envelope]:
        while True:
            item = await self.receive()
            if item is None:
                return
            yield item


class _PluginChannels:
    def __init__(self, plugin_id: str, capabilities: frozenset[Capability]) -> None:
        self.plugin_id = plugin_id
        self.capabilities = capabilities
        self.channels: dict[str | None, Channel] = {}

    def all(self) -> list[Channel]:
        return list(self.channels.values())


class MessageBridge:
    def __init__(
        self,
        projection_source: ProjectionSource,
        event_bus: EventBus,
        *,
        refresh_interval: float = 5.0,
        max_message_bytes: int = 1_048_576,
        rate: float = 100.0,
        burst: int = 100,
        channel_capacity: int = 1000,
    ) -> None:
        self._source = projection_source
        self._bus = event_bus
        self._refresh_interval = refresh_interval
        self._max_message_bytes = max_message_bytes
        self._rate = rate
        self._burst = burst
        self._channel_capacity = channel_capacity
        self._plugins: dict[str, _PluginChannels] = {}
        self._projection: RoomsProjection | None = None
        self._fingerprint: Any = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: LivehubConfig,
        projection_source: ProjectionSource,
        event_bus: EventBus,
    ) -> MessageBridge:
        return cls(
            projection_source,
            event_bus,
            refresh_interval=config.projection_refresh_seconds,
            max_message_bytes=config.max_message_bytes,
            rate=config.bridge_rate_limit_per_second,
            burst=config.bridge_rate_limit_burst,
            channel_capacity=config.bridge_channel_capacity,
        )

    @property
    def projection(self) -> RoomsProjection:
        if self._projection is not None:
            return self._projection
        projection, _ = self._rebuild()
        return projection

    @property
    def plugin_ids(self) -> list[str]:
        return list(self._plugins)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._bus.subscribe(ROOM_STATE_EVENTS, self._on_room_state)
        self._bus.subscribe(ROOM_EVENT, self._on_room_event)
        self._rebuild()
        if self._refresh_interval > 0:
            self._refresh_task = asyncio.create_task(
                self._refresh_loop(), name="bridge-projection-refresh"
            )
        logger.info("bridge_started", refresh_interval=self._refresh_interval)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._bus.unsubscribe(ROOM_STATE_EVENTS, self._on_room_state)
        self._bus.unsubscribe(ROOM_EVENT, self._on_room_event)
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for plugin_id in list(self._plugins):
            self.close_plugin(plugin_id)
        logger.info("bridge_stopped")

    # -- channels -------------------------------------------------------------

    def open_plugin(
        self, plugin_id: str, capabilities: frozenset[Capability] = frozenset()
    ) -> Channel:
        """Open the plugin's main-context channel, seeded with its init context."""
        state = self._plugins.get(plugin_id)
        if state is not None:
            return state.channels[None]
        state = _PluginChannels(plugin_id, capabilities)
        self._plugins[plugin_id] = state
        channel = self._open_channel(state, None)
        logger.debug("bridge_plugin_opened", plugin_id=plugin_id)
        return channel

    def close_plugin(self, plugin_id: str) -> None:
        state = self._plugins.pop(plugin_id, None)
        if state is None:
            return
        for channel in state.all():
            channel.close()
        logger.debug("bridge_plugin_closed", plugin_id=plugin_id)

    def open_popup(self, plugin_id: str, popup_id: str) -> Channel:
        state = self._plugins.get(plugin_id)
        if state is None:
            raise BridgeError(f"Plugin has no open channel: {plugin_id}")
        if popup_id in state.channels:
            raise BridgeError(f"Popup already open: {popup_id}")
        channel = self._open_channel(state, popup_id)
        self._broadcast(
            state, Envelope.lifecycle(env.WINDOW_OPENED, plugin_id, popup_id)
        )
        return channel

    def close_popup(self, plugin_id: str, popup_id: str) -> bool:
        state = self._plugins.get(plugin_id)
        if state is None or popup_id not in state.channels:
            return False
        self._broadcast(
            state, Envelope.lifecycle(env.WINDOW_CLOSED, plugin_id, popup_id)
        )
        state.channels.pop(popup_id).close()
        return True

    def reset_context(self, plugin_id: str) -> int:
        """Discard what is pending for the main context and seed a fresh init.

        Used across a reload: envelopes queued for the previous ``init`` are
        dropped and the new one starts from the current projection. Returns
        the number of envelopes discarded.
        """
        state = self._plugins.get(plugin_id)
        if state is None:
            return 0
        main = state.channels[None]
        discarded = len(main.drain())
        self._seed_context(state, main)
        logger.debug("bridge_context_reset", plugin_id=plugin_id, discarded=discarded)
        return discarded

    def notify_reload(self, plugin_id: str) -> int:
        """Tell every open popup of ``plugin_id`` that the plugin was reloaded."""
        state = self._plugins.get(plugin_id)
        if state is None:
            return 0
        envelope = Envelope.lifecycle(
            env.PLUGIN_RELOADED,
            plugin_id,
            payload={"readonlyStore": self._source().to_wire()},
        )
        return sum(
            1
            for popup_id, channel in state.channels.items()
            if popup_id is not None and channel.put(envelope)
        )

    def channel(self, plugin_id: str, popup_id: str | None = None) -> Channel | None:
        state = self._plugins.get(plugin_id)
        if state is None:
            return None
        return state.channels.get(popup_id)

    def _open_channel(self, state: _PluginChannels, popup_id: str | None) -> Channel:
        budget = AdmissionBudget(self._rate, self._burst) if self._rate > 0 else None
        channel = Channel(
            state.plugin_id, popup_id, budget, capacity=self._channel_capacity
        )
        state.channels[popup_id] = channel
        self._seed_context(state, channel)
        return channel

    def _seed_context(self, state: _PluginChannels, channel: Channel) -> None:
        context = PluginContext(
            plugin_id=state.plugin_id,
            popup_id=channel.popup_id,
            capabilities=sorted(c.value for c in state.capabilities),
            readonly_store=self._source().to_wire(),
        )
        channel.put(
            Envelope.data(env.READONLY_STORE_INIT, state.plugin_id, context.to_wire())
        )

    # -- delivery -------------------------------------------------------------

    def publish_projection(self, *, force: bool = False) -> bool:
        """Rebuild the projection and push it to every channel if it changed."""
        projection, changed = self._rebuild()
        if not changed and not force:
            return False
        wire = projection.to_wire()
        for state in list(self._plugins.values()):
            self._broadcast(
                state, Envelope.data(env.READONLY_STORE_UPDATE, state.plugin_id, wire)
            )
        logger.debug(
            "bridge_projection_published",
            plugins=len(self._plugins),
            rooms=len(wire.get("rooms", ())),
        )
        return True

    def send_data(
        self,
        plugin_id: str,
        event: str,
        payload: Any = None,
        popup_id: str | None = None,
        *,
        broadcast: bool = False,
    ) -> int:
        """Deliver a data envelope to one channel, or all of a plugin's channels."""
        state = self._plugins.get(plugin_id)
        if state is None:
            raise BridgeError(f"Plugin has no open channel: {plugin_id}")
        envelope = Envelope.data(event, plugin_id, payload)
        if broadcast:
            return self._broadcast(state, envelope)
        channel = state.channels.get(popup_id)
        if channel is None:
            raise BridgeError(f"Unknown channel: {plugin_id}/{popup_id}")
        return 1 if channel.put(envelope) else 0

    def admit(
        self, plugin_id: str, payload: Any, popup_id: str | None = None
    ) -> ErrorCode | None:
        """Check an inbound message against the channel's rate and size limits.

        Returns the rejecting error code, or ``None`` when the message may pass.
        """
        channel = self.channel(plugin_id, popup_id)
        if channel is None:
            return ErrorCode.NOT_FOUND
        if channel.budget is not None and not channel.budget.try_spend():
            logger.warning(
                "bridge_rate_limited",
                plugin_id=plugin_id,
                popup_id=popup_id,
                rejected=channel.budget.rejected,
                retry_after=round(channel.budget.retry_after(), 3),
            )
            return ErrorCode.RATE_LIMITED
        try:
            size = len(json.dumps(payload, default=str).encode("utf-8"))
        except ValueError:
            return ErrorCode.INVALID_ARGUMENT
        if size > self._max_message_bytes:
            logger.warning(
                "bridge_payload_too_large",
                plugin_id=plugin_id,
                size=size,
                limit=self._max_message_bytes,
            )
            return ErrorCode.PAYLOAD_TOO_LARGE
        return None

    def _broadcast(self, state: _PluginChannels, envelope: Envelope) -> int:
        return sum(1 for channel in state.all() if channel.put(envelope))

    def _rebuild(self) -> tuple[RoomsProjection, bool]:
        projection = self._source()
        fingerprint = projection.model_dump(exclude={"generated_at"})
        changed = fingerprint != self._fingerprint
        self._projection = projection
        self._fingerprint = fingerprint
        return projection, changed

    # -- event bus handlers ---------------------------------------------------

    async def _on_room_state(self, event: Event) -> None:
        self.publish_projection()

    async def _on_room_event(self, event: Event) -> None:
        payload = event.data.get("event")
        for state in list(self._plugins.values()):
            if Capability.ROOM_EVENTS in state.capabilities:
                self._broadcast(
                    state, Envelope.data(env.ROOM_EVENT, state.plugin_id, payload)
                )

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                self.publish_projection()
            except Exception:
                logger.exception("bridge_refresh_failed")
