"""Discriminated result values returned across the control surface."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_CONNECTED = "ALREADY_CONNECTED"
    ADAPTER_FAILURE = "ADAPTER_FAILURE"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    INVALID_PLUGIN = "INVALID_PLUGIN"
    INIT_FAILED = "INIT_FAILED"
    HANDLER_FAILURE = "HANDLER_FAILURE"
    TIMEOUT = "TIMEOUT"
    NOT_READY = "NOT_READY"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    LIMIT_REACHED = "LIMIT_REACHED"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"


class RoomResult(BaseModel):
    """Outcome of a room control operation.

    ``status`` carries the session status after the call when a session
    exists, so benign failures like ``ALREADY_CONNECTED`` still report state.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    room_id: str
    status: str | None = None
    code: ErrorCode | None = None
    error: str | None = None

    @classmethod
    def ok(cls, room_id: str, status: str | None = None) -> RoomResult:
        return cls(success=True, room_id=room_id, status=status)

    @classmethod
    def fail(
        cls,
        room_id: str,
        code: ErrorCode,
        error: str,
        status: str | None = None,
    ) -> RoomResult:
        return cls(
            success=False, room_id=room_id, status=status, code=code, error=error
        )

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.code is not None:
            data["code"] = self.code.value
        if self.error is not None:
            data["error"] = self.error
        if self.status is not None:
            data["status"] = self.status
        return data


class PluginResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    plugin_id: str
    state: str | None = None
    popup_id: str | None = None
    code: ErrorCode | None = None
    error: str | None = None
    message: str | None = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, "pluginId": self.plugin_id}
        for key, value in (
            ("state", self.state),
            ("popupId", self.popup_id),
            ("code", self.code.value if self.code else None),
            ("error", self.error),
            ("message", self.message),
        ):
            if value is not None:
                data[key] = value
        return data


class DispatchResult(BaseModel):
    """Result of routing one message into a plugin's handler."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    plugin_id: str
    result: Any = None
    code: ErrorCode | None = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "result": self.result}
        code = self.code.value if self.code else None
        return {"ok": False, "code": code, "error": self.error}
