"""Shared exception types for livehub."""


class LivehubError(Exception):
    """Base exception for all livehub errors."""


class ConfigError(LivehubError):
    """Configuration is invalid or missing."""


class AdapterError(LivehubError):
    """An event source failed to connect or dropped its connection."""


class AdapterTimeoutError(AdapterError):
    """An event source did not complete an operation in time."""


class PluginError(LivehubError):
    """Plugin lifecycle error."""


class InvalidPluginError(PluginError):
    """Plugin package is malformed: bad manifest or missing exports."""


class BridgeError(LivehubError):
    """Message could not be routed across the plugin boundary."""
