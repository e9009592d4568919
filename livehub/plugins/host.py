"""Plugin host: registry, running instances and their bridge channels."""

from __future__ import annotations

import asyncio
import copy
import secrets
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from livehub.bridge.envelope import Envelope
from livehub.core.events import (
    PLUGIN_FAULT,
    PLUGIN_LOADED,
    PLUGIN_SUSPENDED,
    PLUGIN_UNLOADED,
    POPUP_CLOSED,
    POPUP_OPENED,
    Event,
)
from livehub.core.results import DispatchResult, ErrorCode, PluginResult
from livehub.exceptions import InvalidPluginError
from livehub.plugins.instance import LifecycleState, PluginInstance
from livehub.plugins.loader import discover
from livehub.plugins.registry import PluginRegistry

if TYPE_CHECKING:
    from livehub.bridge.bridge import Channel, MessageBridge
    from livehub.core.config import LivehubConfig
    from livehub.core.events import EventBus
    from livehub.plugins.base import PluginDefinition

logger = structlog.get_logger()

BUILTIN_PLUGIN_DIR = Path(__file__).parent / "builtin"

_FAULT_CODES = frozenset({ErrorCode.HANDLER_FAILURE, ErrorCode.TIMEOUT})

_ADMIT_ERRORS = {
    ErrorCode.NOT_FOUND: "Unknown channel",
    ErrorCode.RATE_LIMITED: "Too many messages, slow down",
    ErrorCode.PAYLOAD_TOO_LARGE: "Message exceeds the maximum payload size",
    ErrorCode.INVALID_ARGUMENT: "Payload is not serializable",
}


class PluginHost:
    """Loads plugins into supervised instances and routes messages to them.

    Lifecycle operations on one plugin (load, unload, reload, popups) are
    serialized by a per-plugin lock. ``dispatch`` takes no lock: it only runs
    against READY instances and reports ``NOT_READY`` otherwise. While a
    plugin is READY a delivery pump feeds its main-context bridge channel
    into ``handle_message`` in order. Failures of plugin code are returned
    as results and never propagate into the host.
    """

    def __init__(
        self,
        bridge: MessageBridge,
        event_bus: EventBus,
        registry: PluginRegistry | None = None,
        *,
        init_timeout: float = 10.0,
        cleanup_timeout: float = 5.0,
        message_timeout: float = 5.0,
        max_popups_per_plugin: int = 3,
        fault_threshold: int = 0,
    ) -> None:
        self._bridge = bridge
        self._bus = event_bus
        self._registry = registry or PluginRegistry()
        self._init_timeout = init_timeout
        self._cleanup_timeout = cleanup_timeout
        self._message_timeout = message_timeout
        self._max_popups = max_popups_per_plugin
        self._fault_threshold = fault_threshold
        self._instances: dict[str, PluginInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._pumps: dict[str, _DeliveryPump] = {}

    @classmethod
    def from_config(
        cls,
        config: LivehubConfig,
        bridge: MessageBridge,
        event_bus: EventBus,
        registry: PluginRegistry | None = None,
    ) -> PluginHost:
        return cls(
            bridge,
            event_bus,
            registry,
            init_timeout=config.plugin_init_timeout_seconds,
            cleanup_timeout=config.plugin_cleanup_timeout_seconds,
            message_timeout=config.plugin_message_timeout_seconds,
            max_popups_per_plugin=config.max_popups_per_plugin,
            fault_threshold=config.plugin_fault_threshold,
        )

    @property
    def registry(self) -> PluginRegistry:
        return self._registry

    @property
    def plugin_ids(self) -> list[str]:
        """Ids of plugins that currently have a running instance."""
        return list(self._instances)

    def state(self, plugin_id: str) -> LifecycleState | None:
        instance = self._instances.get(plugin_id)
        return instance.state if instance is not None else None

    def popups(self, plugin_id: str) -> frozenset[str]:
        instance = self._instances.get(plugin_id)
        return instance.popups if instance is not None else frozenset()

    def channel(self, plugin_id: str, popup_id: str | None = None) -> Channel | None:
        return self._bridge.channel(plugin_id, popup_id)

    async def wait_delivered(self, plugin_id: str) -> None:
        """Wait until everything queued for the plugin's main context was handled."""
        pump = self._pumps.get(plugin_id)
        if pump is not None:
            await pump.channel.join()

    # -- registration ---------------------------------------------------------

    def register(self, definition: PluginDefinition) -> PluginResult:
        try:
            self._registry.register(definition)
        except InvalidPluginError as e:
            return PluginResult(
                ok=False,
                plugin_id=definition.plugin_id,
                code=ErrorCode.INVALID_PLUGIN,
                error=str(e),
            )
        return PluginResult(ok=True, plugin_id=definition.plugin_id)

    def discover(self, directories: list[Path]) -> list[PluginResult]:
        """Register every valid plugin package found under ``directories``."""
        report = discover(directories)
        results = [self.register(d) for d in report.definitions]
        results.extend(
            PluginResult(
                ok=False,
                plugin_id=failure.path.name,
                code=ErrorCode.INVALID_PLUGIN,
                error=failure.error,
            )
            for failure in report.failures
        )
        logger.info(
            "plugins_discovered",
            registered=sum(1 for r in results if r.ok),
            invalid=sum(1 for r in results if not r.ok),
        )
        return results

    # -- lifecycle ------------------------------------------------------------

    async def load(self, target: PluginDefinition | str) -> PluginResult:
        if isinstance(target, str):
            definition = self._registry.get(target)
            if definition is None:
                return _not_found(target)
        else:
            definition = target
            known = self._registry.get(definition.plugin_id)
            if known is None:
                self._registry.register(definition)
            elif known is not definition:
                return PluginResult(
                    ok=False,
                    plugin_id=definition.plugin_id,
                    code=ErrorCode.INVALID_PLUGIN,
                    error=f"Plugin already registered: {definition.plugin_id}",
                )

        plugin_id = definition.plugin_id
        async with self._lock_for(plugin_id):
            current = self._instances.get(plugin_id)
            if current is not None:
                return PluginResult(
                    ok=False,
                    plugin_id=plugin_id,
                    state=current.state.value,
                    code=ErrorCode.INVALID_PLUGIN,
                    error=f"Plugin already loaded: {plugin_id}",
                )
            instance = PluginInstance(
                definition,
                init_timeout=self._init_timeout,
                cleanup_timeout=self._cleanup_timeout,
                message_timeout=self._message_timeout,
            )
            self._instances[plugin_id] = instance
            self._bridge.open_plugin(plugin_id, definition.manifest.capabilities)
            try:
                result = await instance.initialize()
            finally:
                if instance.state != LifecycleState.READY:
                    self._discard(instance)
            if result.ok:
                self._start_pump(instance)

        if result.ok:
            await self._bus.emit(
                Event(
                    name=PLUGIN_LOADED,
                    data={"plugin_id": plugin_id, "version": definition.manifest.version},
                )
            )
        return result

    async def load_all(self) -> list[PluginResult]:
        results = []
        for definition in self._registry.definitions:
            if definition.plugin_id in self._instances:
                continue
            results.append(await self.load(definition))
        return results

    async def unload(self, plugin_id: str) -> PluginResult:
        async with self._lock_for(plugin_id):
            instance = self._instances.get(plugin_id)
            if instance is None:
                return _not_found(plugin_id)
            result = await self._teardown(instance)
        await self._bus.emit(Event(name=PLUGIN_UNLOADED, data={"plugin_id": plugin_id}))
        return result

    async def reload(self, plugin_id: str) -> PluginResult:
        """Run cleanup then init again; popups stay attached and are notified."""
        async with self._lock_for(plugin_id):
            instance = self._instances.get(plugin_id)
            if instance is None:
                return _not_found(plugin_id)
            await self._stop_pump(plugin_id)
            cleanup = await instance.shutdown()
            discarded = self._bridge.reset_context(plugin_id)
            try:
                result = await instance.initialize()
            finally:
                if instance.state != LifecycleState.READY:
                    await self._close_popups(instance)
                    self._discard(instance)
            if result.ok:
                instance.fault_count = 0
                self._bridge.notify_reload(plugin_id)
                self._start_pump(instance)

        if not result.ok:
            logger.error("plugin_reload_failed", plugin_id=plugin_id, error=result.error)
            await self._bus.emit(
                Event(name=PLUGIN_UNLOADED, data={"plugin_id": plugin_id})
            )
            return result
        logger.info(
            "plugin_reloaded",
            plugin_id=plugin_id,
            cleanup_error=cleanup.error,
            discarded=discarded,
        )
        await self._bus.emit(
            Event(name=PLUGIN_LOADED, data={"plugin_id": plugin_id, "reloaded": True})
        )
        return result

    async def shutdown(self) -> None:
        logger.info("plugin_host_shutting_down", plugin_count=len(self._instances))
        for plugin_id in list(self._instances):
            await self.unload(plugin_id)
        self._locks.clear()
        logger.info("plugin_host_shutdown_complete")

    # -- messaging ------------------------------------------------------------

    async def dispatch(
        self,
        plugin_id: str,
        type: str,
        payload: Any = None,
        *,
        popup_id: str | None = None,
    ) -> DispatchResult:
        instance = self._instances.get(plugin_id)
        if instance is None and self._registry.get(plugin_id) is None:
            return DispatchResult(
                ok=False,
                plugin_id=plugin_id,
                code=ErrorCode.NOT_FOUND,
                error=f"Plugin not found: {plugin_id}",
            )
        if not isinstance(type, str) or not type:
            return DispatchResult(
                ok=False,
                plugin_id=plugin_id,
                code=ErrorCode.INVALID_ARGUMENT,
                error="message type must be a non-empty string",
            )
        state = instance.state if instance is not None else LifecycleState.UNLOADED
        if instance is None or state != LifecycleState.READY:
            return DispatchResult(
                ok=False,
                plugin_id=plugin_id,
                code=ErrorCode.NOT_READY,
                error=f"plugin is {state.value}",
            )
        rejected = self._bridge.admit(plugin_id, payload, popup_id)
        if rejected is not None:
            return DispatchResult(
                ok=False,
                plugin_id=plugin_id,
                code=rejected,
                error=_ADMIT_ERRORS.get(rejected, rejected.value),
            )

        request = Envelope.data(type, plugin_id, copy.deepcopy(payload), popup_id)
        result = await instance.handle(request.event, request.payload)
        if result.ok:
            try:
                return result.model_copy(update={"result": copy.deepcopy(result.result)})
            except Exception as e:
                result = DispatchResult(
                    ok=False,
                    plugin_id=plugin_id,
                    code=ErrorCode.HANDLER_FAILURE,
                    error=f"handler result cannot be copied: {e}",
                )
        if result.code in _FAULT_CODES:
            await self._record_fault(instance, result)
        return result

    # -- popups ---------------------------------------------------------------

    async def attach_popup(
        self, plugin_id: str, popup_id: str | None = None
    ) -> PluginResult:
        async with self._lock_for(plugin_id):
            instance = self._instances.get(plugin_id)
            if instance is None:
                return _not_found(plugin_id)
            if instance.state != LifecycleState.READY:
                return PluginResult(
                    ok=False,
                    plugin_id=plugin_id,
                    state=instance.state.value,
                    code=ErrorCode.NOT_READY,
                    error=f"plugin is {instance.state.value}",
                )
            if self._max_popups and len(instance.popups) >= self._max_popups:
                return PluginResult(
                    ok=False,
                    plugin_id=plugin_id,
                    state=instance.state.value,
                    code=ErrorCode.LIMIT_REACHED,
                    error=f"Maximum popups per plugin ({self._max_popups}) reached",
                )
            if popup_id is None:
                popup_id = f"popup_{plugin_id}_{secrets.token_hex(4)}"
            if not instance.attach_popup(popup_id):
                return PluginResult(
                    ok=False,
                    plugin_id=plugin_id,
                    state=instance.state.value,
                    popup_id=popup_id,
                    code=ErrorCode.INVALID_ARGUMENT,
                    error=f"Popup already attached: {popup_id}",
                )
            self._bridge.open_popup(plugin_id, popup_id)
        logger.info("popup_attached", plugin_id=plugin_id, popup_id=popup_id)
        await self._bus.emit(
            Event(name=POPUP_OPENED, data={"plugin_id": plugin_id, "popup_id": popup_id})
        )
        return PluginResult(
            ok=True, plugin_id=plugin_id, state=instance.state.value, popup_id=popup_id
        )

    async def detach_popup(self, plugin_id: str, popup_id: str) -> PluginResult:
        async with self._lock_for(plugin_id):
            instance = self._instances.get(plugin_id)
            if instance is None:
                return _not_found(plugin_id)
            detached = instance.detach_popup(popup_id)
            if detached:
                self._bridge.close_popup(plugin_id, popup_id)
        if detached:
            logger.info("popup_detached", plugin_id=plugin_id, popup_id=popup_id)
            await self._bus.emit(
                Event(
                    name=POPUP_CLOSED, data={"plugin_id": plugin_id, "popup_id": popup_id}
                )
            )
        return PluginResult(
            ok=True, plugin_id=plugin_id, state=instance.state.value, popup_id=popup_id
        )

    # -- internals ------------------------------------------------------------

    def _lock_for(self, plugin_id: str) -> asyncio.Lock:
        return self._locks.setdefault(plugin_id, asyncio.Lock())

    def _start_pump(self, instance: PluginInstance) -> None:
        channel = self._bridge.channel(instance.plugin_id)
        if channel is not None:
            self._pumps[instance.plugin_id] = _DeliveryPump(instance, channel)

    async def _stop_pump(self, plugin_id: str) -> None:
        pump = self._pumps.pop(plugin_id, None)
        if pump is not None:
            await pump.stop()

    def _discard(self, instance: PluginInstance) -> None:
        if self._instances.get(instance.plugin_id) is instance:
            del self._instances[instance.plugin_id]
            self._bridge.close_plugin(instance.plugin_id)

    async def _close_popups(self, instance: PluginInstance) -> None:
        for popup_id in sorted(instance.clear_popups()):
            self._bridge.close_popup(instance.plugin_id, popup_id)
            await self._bus.emit(
                Event(
                    name=POPUP_CLOSED,
                    data={"plugin_id": instance.plugin_id, "popup_id": popup_id},
                )
            )

    async def _teardown(self, instance: PluginInstance) -> PluginResult:
        """Stop delivery, detach popups, run cleanup and drop the instance. Lock held."""
        await self._stop_pump(instance.plugin_id)
        await self._close_popups(instance)
        result = await instance.shutdown()
        self._discard(instance)
        logger.info("plugin_unloaded", plugin_id=instance.plugin_id, error=result.error)
        return result

    async def _record_fault(self, instance: PluginInstance, result: DispatchResult) -> None:
        instance.fault_count += 1
        code = result.code.value if result.code else None
        await self._bus.emit(
            Event(
                name=PLUGIN_FAULT,
                data={
                    "plugin_id": instance.plugin_id,
                    "code": code,
                    "error": result.error,
                    "fault_count": instance.fault_count,
                },
            )
        )
        if self._fault_threshold and instance.fault_count >= self._fault_threshold:
            await self._suspend(instance)

    async def _suspend(self, instance: PluginInstance) -> None:
        plugin_id = instance.plugin_id
        async with self._lock_for(plugin_id):
            if self._instances.get(plugin_id) is not instance:
                return
            logger.error(
                "plugin_suspended",
                plugin_id=plugin_id,
                fault_count=instance.fault_count,
            )
            await self._teardown(instance)
        await self._bus.emit(
            Event(
                name=PLUGIN_SUSPENDED,
                data={"plugin_id": plugin_id, "fault_count": instance.fault_count},
            )
        )
        await self._bus.emit(Event(name=PLUGIN_UNLOADED, data={"plugin_id": plugin_id}))


class _DeliveryPump:
    """Feeds a plugin's main-context data envelopes, in order, into its handler.

    Lifecycle envelopes on the main context are consumed without delivery;
    they are meant for popup windows. Passive plugins have their envelopes
    consumed the same way.
    """

    def __init__(self, instance: PluginInstance, channel: Channel) -> None:
        self.instance = instance
        self.channel = channel
        self.delivered = 0
        self.failed = 0
        self._task = asyncio.create_task(
            self._run(), name=f"plugin-pump:{instance.plugin_id}"
        )

    async def stop(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while (envelope := await self.channel.receive()) is not None:
            try:
                await self._deliver(envelope)
            except Exception:
                logger.exception(
                    "plugin_delivery_error",
                    plugin_id=self.instance.plugin_id,
                    message_type=envelope.event,
                )
            finally:
                self.channel.task_done()

    async def _deliver(self, envelope: Envelope) -> None:
        if envelope.kind != "data" or self.instance.passive:
            return
        result = await self.instance.handle(envelope.event, envelope.payload)
        if result.ok:
            self.delivered += 1
            return
        self.failed += 1
        logger.warning(
            "plugin_delivery_failed",
            plugin_id=self.instance.plugin_id,
            message_type=envelope.event,
            seq=envelope.seq,
            code=result.code.value if result.code else None,
            error=result.error,
        )


def _not_found(plugin_id: str) -> PluginResult:
    return PluginResult(
        ok=False,
        plugin_id=plugin_id,
        code=ErrorCode.NOT_FOUND,
        error=f"Plugin not found: {plugin_id}",
    )
