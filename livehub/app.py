"""Bootstrap: wires all components together."""

from __future__ import annotations

import logging
import logging.handlers
from typing import TYPE_CHECKING

import structlog

from livehub.bridge.bridge import MessageBridge
from livehub.core.config import LivehubConfig
from livehub.core.events import EventBus
from livehub.core.hub import Hub
from livehub.exceptions import ConfigError
from livehub.plugins.host import BUILTIN_PLUGIN_DIR, PluginHost
from livehub.rooms.adapter import load_adapter_factory
from livehub.rooms.manager import RoomConnectionManager

if TYPE_CHECKING:
    from livehub.plugins.base import PluginDefinition
    from livehub.rooms.adapter import AdapterFactory

logger = structlog.get_logger()


def configure_logging(config: LivehubConfig) -> None:
    """Set up structlog with console output and optional rotating JSON file handler."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
        )
    )
    root_logger.addHandler(console_handler)

    # JSON lines for machine parsing
    if config.log_dir is not None:
        log_dir = config.log_dir.expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "livehub.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
            )
        )
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_hub(
    config: LivehubConfig | None = None,
    adapter_factory: AdapterFactory | None = None,
    plugins: list[PluginDefinition] | None = None,
) -> Hub:
    if config is None:
        config = LivehubConfig()  # pydantic-settings loads from env

    if adapter_factory is None:
        if not config.adapter_factory:
            raise ConfigError(
                "No event source configured: set LIVEHUB_ADAPTER_FACTORY to 'module:callable'"
            )
        adapter_factory = load_adapter_factory(config.adapter_factory)

    event_bus = EventBus()
    rooms = RoomConnectionManager.from_config(config, adapter_factory, event_bus)
    bridge = MessageBridge.from_config(config, rooms.list, event_bus)
    host = PluginHost.from_config(config, bridge, event_bus)

    for definition in plugins or []:
        result = host.register(definition)
        if not result.ok:
            logger.warning(
                "plugin_registration_failed",
                plugin_id=result.plugin_id,
                error=result.error,
            )

    plugin_dirs = list(config.plugin_dirs)
    if config.load_builtin_plugins:
        plugin_dirs.insert(0, BUILTIN_PLUGIN_DIR)

    logger.info(
        "hub_built",
        max_rooms=config.max_rooms,
        plugin_dirs=[str(d) for d in plugin_dirs],
    )
    return Hub(config, event_bus, rooms, bridge, host, plugin_dirs=plugin_dirs)
