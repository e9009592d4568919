"""Hub: owns the room manager, the bridge and the plugin host for one process."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from livehub.control import PluginControl, RoomControl

if TYPE_CHECKING:
    from livehub.bridge.bridge import MessageBridge
    from livehub.core.config import LivehubConfig
    from livehub.core.events import EventBus
    from livehub.core.results import PluginResult
    from livehub.plugins.host import PluginHost
    from livehub.rooms.manager import RoomConnectionManager

logger = structlog.get_logger()


class Hub:
    def __init__(
        self,
        config: LivehubConfig,
        event_bus: EventBus,
        rooms: RoomConnectionManager,
        bridge: MessageBridge,
        plugins: PluginHost,
        plugin_dirs: list[Path] | None = None,
    ) -> None:
        self.config = config
        self.event_bus = event_bus
        self.rooms = rooms
        self.bridge = bridge
        self.plugins = plugins
        self.room_control = RoomControl(rooms)
        self.plugin_control = PluginControl(plugins)
        self._plugin_dirs = list(plugin_dirs or [])
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self) -> list[PluginResult]:
        """Start the bridge, then discover and initialize every plugin.

        Returns one result per plugin package found or loaded; failures are
        reported there and never abort startup.
        """
        if self._started:
            return []
        await self.bridge.start()
        results = self.plugins.discover(self._plugin_dirs) if self._plugin_dirs else []
        results.extend(await self.plugins.load_all())
        self._started = True
        logger.info(
            "hub_started",
            plugins_loaded=len(self.plugins.plugin_ids),
            plugin_failures=sum(1 for r in results if not r.ok),
        )
        return results

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("hub_shutting_down")
        await self.plugins.shutdown()
        await self.bridge.stop()
        await self.rooms.shutdown()
        logger.info("hub_shutdown_complete")
