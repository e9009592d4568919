"""Running plugin instance with a supervised lifecycle.

Every hook call is bounded by a timeout. Coroutine hooks run on the event
loop; plain functions run in a worker thread so a blocking plugin cannot
stall the host.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from livehub.core.results import DispatchResult, ErrorCode, PluginResult

if TYPE_CHECKING:
    from livehub.plugins.base import PluginDefinition, PluginManifest

logger = structlog.get_logger()


class LifecycleState(StrEnum):
    UNLOADED = "unloaded"
    INITIALIZING = "initializing"
    READY = "ready"
    CLEANING = "cleaning"


async def call_hook(fn: Callable[..., Any], timeout: float, *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        result = await asyncio.wait_for(fn(*args), timeout=timeout)
    else:
        result = await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    if inspect.isawaitable(result):
        result = await asyncio.wait_for(result, timeout=timeout)
    return result


def interpret_hook_result(value: Any) -> tuple[bool, str | None]:
    """Read ``{ok, message?}`` from an init/cleanup return value."""
    if value is None:
        return True, None
    if isinstance(value, bool):
        return value, None
    if isinstance(value, Mapping):
        message = value.get("message")
        return bool(value.get("ok", True)), str(message) if message is not None else None
    return True, None


class PluginInstance:
    def __init__(
        self,
        definition: PluginDefinition,
        *,
        init_timeout: float = 10.0,
        cleanup_timeout: float = 5.0,
        message_timeout: float = 5.0,
    ) -> None:
        self._definition = definition
        self._hooks = definition.hooks
        self._init_timeout = init_timeout
        self._cleanup_timeout = cleanup_timeout
        self._message_timeout = message_timeout
        self._state = LifecycleState.UNLOADED
        self._popups: set[str] = set()
        self.fault_count = 0

    @property
    def plugin_id(self) -> str:
        return self._definition.plugin_id

    @property
    def manifest(self) -> PluginManifest:
        return self._definition.manifest

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def passive(self) -> bool:
        return self._hooks.passive

    @property
    def popups(self) -> frozenset[str]:
        return frozenset(self._popups)

    def _result(self, ok: bool, **kwargs: Any) -> PluginResult:
        return PluginResult(
            ok=ok, plugin_id=self.plugin_id, state=self._state.value, **kwargs
        )

    async def initialize(self) -> PluginResult:
        if self._state != LifecycleState.UNLOADED:
            return self._result(
                False,
                code=ErrorCode.INIT_FAILED,
                error=f"cannot initialize from state {self._state.value}",
            )
        self._state = LifecycleState.INITIALIZING
        try:
            value = await call_hook(self._hooks.init, self._init_timeout)
        except TimeoutError:
            self._state = LifecycleState.UNLOADED
            logger.error(
                "plugin_init_timeout",
                plugin_id=self.plugin_id,
                timeout=self._init_timeout,
            )
            return self._result(
                False,
                code=ErrorCode.INIT_FAILED,
                error=f"init timed out after {self._init_timeout}s",
            )
        except asyncio.CancelledError:
            self._state = LifecycleState.UNLOADED
            raise
        except Exception as e:
            self._state = LifecycleState.UNLOADED
            logger.error("plugin_init_failed", plugin_id=self.plugin_id, error=str(e))
            return self._result(False, code=ErrorCode.INIT_FAILED, error=str(e))

        ok, message = interpret_hook_result(value)
        if not ok:
            self._state = LifecycleState.UNLOADED
            logger.error("plugin_init_rejected", plugin_id=self.plugin_id, message=message)
            return self._result(
                False,
                code=ErrorCode.INIT_FAILED,
                error=message or "init reported failure",
            )
        self._state = LifecycleState.READY
        logger.info("plugin_initialized", plugin_id=self.plugin_id, message=message)
        return self._result(True, message=message)

    async def shutdown(self) -> PluginResult:
        """Run ``cleanup`` once and settle in UNLOADED whatever it does."""
        if self._state != LifecycleState.READY:
            return self._result(True, message="not running")
        self._state = LifecycleState.CLEANING
        message: str | None = None
        error: str | None = None
        try:
            value = await call_hook(self._hooks.cleanup, self._cleanup_timeout)
            ok, message = interpret_hook_result(value)
            if not ok:
                error = message or "cleanup reported failure"
        except TimeoutError:
            error = f"cleanup timed out after {self._cleanup_timeout}s"
        except Exception as e:
            error = str(e) or type(e).__name__
        finally:
            self._state = LifecycleState.UNLOADED
        if error is not None:
            logger.warning("plugin_cleanup_failed", plugin_id=self.plugin_id, error=error)
        else:
            logger.info("plugin_cleaned_up", plugin_id=self.plugin_id)
        return self._result(True, message=message, error=error)

    async def handle(self, type: str, payload: Any) -> DispatchResult:
        if self._state != LifecycleState.READY:
            return DispatchResult(
                ok=False,
                plugin_id=self.plugin_id,
                code=ErrorCode.NOT_READY,
                error=f"plugin is {self._state.value}",
            )
        handler = self._hooks.handle_message
        if handler is None:
            return DispatchResult(
                ok=False,
                plugin_id=self.plugin_id,
                code=ErrorCode.NOT_SUPPORTED,
                error="plugin does not handle messages",
            )
        try:
            value = await call_hook(handler, self._message_timeout, type, payload)
        except TimeoutError:
            logger.warning(
                "plugin_handler_timeout",
                plugin_id=self.plugin_id,
                message_type=type,
                timeout=self._message_timeout,
            )
            return DispatchResult(
                ok=False,
                plugin_id=self.plugin_id,
                code=ErrorCode.TIMEOUT,
                error=f"handler timed out after {self._message_timeout}s",
            )
        except Exception as e:
            logger.warning(
                "plugin_handler_failed",
                plugin_id=self.plugin_id,
                message_type=type,
                error=str(e),
            )
            return DispatchResult(
                ok=False,
                plugin_id=self.plugin_id,
                code=ErrorCode.HANDLER_FAILURE,
                error=str(e) or e.__class__.__name__,
            )
        return DispatchResult(ok=True, plugin_id=self.plugin_id, result=value)

    def attach_popup(self, popup_id: str) -> bool:
        if popup_id in self._popups:
            return False
        self._popups.add(popup_id)
        return True

    def detach_popup(self, popup_id: str) -> bool:
        if popup_id not in self._popups:
            return False
        self._popups.discard(popup_id)
        return True

    def clear_popups(self) -> frozenset[str]:
        popups = frozenset(self._popups)
        self._popups.clear()
        return popups
