"""Reference plugin: answers ``ping`` and echoes everything else."""

import time
from typing import Any

import structlog

logger = structlog.get_logger()

_state: dict[str, Any] = {"started_at": None, "handled": 0}


async def init() -> dict[str, Any]:
    _state["started_at"] = time.time()
    _state["handled"] = 0
    logger.info("base_example_init")
    return {"ok": True, "message": "base example ready"}


async def cleanup() -> dict[str, Any]:
    logger.info("base_example_cleanup", handled=_state["handled"])
    _state["started_at"] = None
    return {"ok": True}


async def handle_message(type: str, payload: Any) -> Any:
    if type == "ping":
        return {"pong": True, "t": int(time.time() * 1000)}
    _state["handled"] += 1
    return {"type": type, "echo": payload}
