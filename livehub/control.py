"""Control surfaces exposed to the UI layer: plain camelCase dicts in and out.

Every call resolves to a dict. Unexpected exceptions are logged and turned
into an error payload instead of escaping to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from livehub.core.results import ErrorCode

if TYPE_CHECKING:
    from livehub.plugins.host import PluginHost
    from livehub.rooms.manager import RoomConnectionManager

logger = structlog.get_logger()


def _internal_error(operation: str, e: Exception, **context: Any) -> dict[str, Any]:
    logger.exception("control_call_failed", operation=operation, **context)
    return {"success": False, "code": "INTERNAL", "error": str(e) or e.__class__.__name__}


class RoomControl:
    def __init__(self, manager: RoomConnectionManager) -> None:
        self._manager = manager

    async def connect(self, room_id: str) -> dict[str, Any]:
        try:
            return (await self._manager.connect(room_id)).to_wire()
        except Exception as e:
            return _internal_error("connect", e, room_id=room_id)

    async def disconnect(self, room_id: str) -> dict[str, Any]:
        try:
            return (await self._manager.disconnect(room_id)).to_wire()
        except Exception as e:
            return _internal_error("disconnect", e, room_id=room_id)

    async def reconnect(self, room_id: str) -> dict[str, Any]:
        try:
            return (await self._manager.reconnect(room_id)).to_wire()
        except Exception as e:
            return _internal_error("reconnect", e, room_id=room_id)

    async def remove(self, room_id: str) -> dict[str, Any]:
        try:
            return (await self._manager.remove(room_id)).to_wire()
        except Exception as e:
            return _internal_error("remove", e, room_id=room_id)

    async def list(self) -> dict[str, Any]:
        try:
            return self._manager.list().to_wire()
        except Exception as e:
            logger.exception("control_call_failed", operation="list")
            return {"error": str(e) or e.__class__.__name__}

    async def status(self, room_id: str) -> dict[str, Any]:
        try:
            view = self._manager.status(room_id)
        except Exception as e:
            return _internal_error("status", e, room_id=room_id)
        if view is None:
            return {"error": f"Room not found: {room_id}", "code": ErrorCode.NOT_FOUND.value}
        return view.to_wire()

    async def set_priority(self, room_id: str, priority: Any) -> dict[str, Any]:
        try:
            return (await self._manager.set_priority(room_id, priority)).to_wire()
        except Exception as e:
            return _internal_error("set_priority", e, room_id=room_id)

    async def set_label(self, room_id: str, label: Any) -> dict[str, Any]:
        try:
            return (await self._manager.set_label(room_id, label)).to_wire()
        except Exception as e:
            return _internal_error("set_label", e, room_id=room_id)

    async def set_viewers(self, room_id: str, count: int | None) -> dict[str, Any]:
        try:
            return (await self._manager.set_viewers(room_id, count)).to_wire()
        except Exception as e:
            return _internal_error("set_viewers", e, room_id=room_id)

    # camelCase aliases matching the wire names
    setPriority = set_priority  # noqa: N815
    setLabel = set_label  # noqa: N815


class PluginControl:
    def __init__(self, host: PluginHost) -> None:
        self._host = host

    async def list(self) -> dict[str, Any]:
        plugins = []
        for definition in self._host.registry.definitions:
            state = self._host.state(definition.plugin_id)
            plugins.append(
                {
                    "pluginId": definition.plugin_id,
                    "name": definition.manifest.name,
                    "version": definition.manifest.version,
                    "state": state.value if state is not None else "unloaded",
                    "passive": definition.hooks.passive,
                    "popups": sorted(self._host.popups(definition.plugin_id)),
                }
            )
        return {"plugins": plugins}

    async def load(self, plugin_id: str) -> dict[str, Any]:
        try:
            return (await self._host.load(plugin_id)).to_wire()
        except Exception as e:
            return _internal_error("plugin_load", e, plugin_id=plugin_id)

    async def unload(self, plugin_id: str) -> dict[str, Any]:
        try:
            return (await self._host.unload(plugin_id)).to_wire()
        except Exception as e:
            return _internal_error("plugin_unload", e, plugin_id=plugin_id)

    async def reload(self, plugin_id: str) -> dict[str, Any]:
        try:
            return (await self._host.reload(plugin_id)).to_wire()
        except Exception as e:
            return _internal_error("plugin_reload", e, plugin_id=plugin_id)

    async def send(
        self,
        plugin_id: str,
        type: str,
        payload: Any = None,
        popup_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            result = await self._host.dispatch(plugin_id, type, payload, popup_id=popup_id)
        except Exception as e:
            return _internal_error("plugin_send", e, plugin_id=plugin_id)
        return result.to_wire()

    async def open_popup(self, plugin_id: str, popup_id: str | None = None) -> dict[str, Any]:
        try:
            return (await self._host.attach_popup(plugin_id, popup_id)).to_wire()
        except Exception as e:
            return _internal_error("popup_open", e, plugin_id=plugin_id)

    async def close_popup(self, plugin_id: str, popup_id: str) -> dict[str, Any]:
        try:
            return (await self._host.detach_popup(plugin_id, popup_id)).to_wire()
        except Exception as e:
            return _internal_error("popup_close", e, plugin_id=plugin_id)
