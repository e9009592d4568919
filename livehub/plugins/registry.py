"""Plugin registry of validated definitions keyed by plugin id."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from livehub.exceptions import InvalidPluginError

if TYPE_CHECKING:
    from livehub.plugins.base import PluginDefinition

logger = structlog.get_logger()


class PluginRegistry:
    def __init__(self) -> None:
        self._definitions: dict[str, PluginDefinition] = {}

    def register(self, definition: PluginDefinition) -> None:
        plugin_id = definition.plugin_id
        if plugin_id in self._definitions:
            raise InvalidPluginError(f"Plugin already registered: {plugin_id}")
        self._definitions[plugin_id] = definition
        logger.info(
            "plugin_registered",
            plugin_id=plugin_id,
            version=definition.manifest.version,
        )

    def unregister(self, plugin_id: str) -> PluginDefinition | None:
        definition = self._definitions.pop(plugin_id, None)
        if definition is not None:
            logger.info("plugin_unregistered", plugin_id=plugin_id)
        return definition

    def get(self, plugin_id: str) -> PluginDefinition | None:
        return self._definitions.get(plugin_id)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._definitions

    @property
    def definitions(self) -> list[PluginDefinition]:
        return list(self._definitions.values())
