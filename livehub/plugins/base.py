"""Plugin contract: manifest, capability set and lifecycle hooks."""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from livehub.exceptions import InvalidPluginError

# Accepted spellings for the message handler export
_HANDLER_NAMES = ("handle_message", "handleMessage")


class Capability(StrEnum):
    ROOM_EVENTS = "room-events"
    WINDOW = "window"
    OVERLAY = "overlay"
    UI = "ui"


class PluginManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$", max_length=128)
    name: str
    version: str = "0.0.0"
    description: str = ""
    main: str = "plugin.py"
    capabilities: frozenset[Capability] = frozenset()

    @field_validator("capabilities", mode="before")
    @classmethod
    def parse_capabilities(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset(s.strip() for s in v.split(",") if s.strip())
        return v

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities


@runtime_checkable
class LivehubPlugin(Protocol):
    async def init(self) -> dict[str, Any]:
        """Called with no arguments when the plugin is loaded."""
        ...

    async def cleanup(self) -> dict[str, Any]:
        """Called once per successful init, on unload or reload."""
        ...

    async def handle_message(self, type: str, payload: Any) -> Any:
        """Optional: answer a request; ``ping`` must have no side effects."""
        ...


HookFn = Callable[[], Any]
MessageFn = Callable[[str, Any], Any]


class PluginHooks(BaseModel):
    """Lifecycle capability set resolved once, when the plugin is loaded."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    init: HookFn
    cleanup: HookFn
    handle_message: MessageFn | None = None

    @property
    def passive(self) -> bool:
        return self.handle_message is None

    @classmethod
    def from_object(cls, target: Any) -> PluginHooks:
        missing = [
            name for name in ("init", "cleanup") if not callable(getattr(target, name, None))
        ]
        if missing:
            raise InvalidPluginError(f"missing required exports: {', '.join(missing)}")
        handler = None
        for name in _HANDLER_NAMES:
            candidate = getattr(target, name, None)
            if candidate is not None:
                if not callable(candidate):
                    raise InvalidPluginError(f"{name} is not callable")
                handler = candidate
                break
        return cls(init=target.init, cleanup=target.cleanup, handle_message=handler)


class PluginDefinition(BaseModel):
    """A validated plugin ready to be instantiated by the host."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    manifest: PluginManifest
    hooks: PluginHooks
    source: Path | None = None

    @property
    def plugin_id(self) -> str:
        return self.manifest.id

    @classmethod
    def from_object(
        cls, manifest: PluginManifest, target: Any, source: Path | None = None
    ) -> PluginDefinition:
        return cls(manifest=manifest, hooks=PluginHooks.from_object(target), source=source)
