"""CLI entry point for livehub."""

from __future__ import annotations

import asyncio
import json
import shlex
import sys
from typing import Any

import structlog

from livehub.app import build_hub, configure_logging
from livehub.core.config import LivehubConfig
from livehub.core.hub import Hub
from livehub.exceptions import ConfigError

logger = structlog.get_logger()

HELP = """\
Rooms:
  connect <room>            disconnect <room>       reconnect <room>
  remove <room>             status <room>           list
  priority <room> <n>       label <room> <text>     viewers <room> <n|->
Plugins:
  plugins                   load <id>               unload <id>
  reload <id>               send <id> <type> [json] popup <id> [popup-id]
  close-popup <id> <popup-id>
Other:
  help                      quit
"""


class UsageError(Exception):
    pass


def _arg(args: list[str], index: int, name: str) -> str:
    if len(args) <= index:
        raise UsageError(f"missing argument: {name}")
    return args[index]


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise UsageError(f"{name} must be an integer") from e


async def execute(hub: Hub, argv: list[str]) -> Any:
    """Run one CLI command and return its result payload."""
    command, args = argv[0].lower(), argv[1:]
    rooms, plugins = hub.room_control, hub.plugin_control

    match command:
        case "help":
            return HELP
        case "list":
            return await rooms.list()
        case "connect":
            return await rooms.connect(_arg(args, 0, "room"))
        case "disconnect":
            return await rooms.disconnect(_arg(args, 0, "room"))
        case "reconnect":
            return await rooms.reconnect(_arg(args, 0, "room"))
        case "remove":
            return await rooms.remove(_arg(args, 0, "room"))
        case "status":
            return await rooms.status(_arg(args, 0, "room"))
        case "priority":
            value = _parse_int(_arg(args, 1, "priority"), "priority")
            return await rooms.set_priority(_arg(args, 0, "room"), value)
        case "label":
            return await rooms.set_label(_arg(args, 0, "room"), " ".join(args[1:]))
        case "viewers":
            raw = _arg(args, 1, "count")
            count = None if raw == "-" else _parse_int(raw, "count")
            return await rooms.set_viewers(_arg(args, 0, "room"), count)
        case "plugins":
            return await plugins.list()
        case "load":
            return await plugins.load(_arg(args, 0, "plugin"))
        case "unload":
            return await plugins.unload(_arg(args, 0, "plugin"))
        case "reload":
            return await plugins.reload(_arg(args, 0, "plugin"))
        case "send":
            payload = None
            if len(args) > 2:
                try:
                    payload = json.loads(" ".join(args[2:]))
                except json.JSONDecodeError as e:
                    raise UsageError(f"payload is not valid JSON: {e}") from e
            return await plugins.send(
                _arg(args, 0, "plugin"), _arg(args, 1, "type"), payload
            )
        case "popup":
            popup_id = args[1] if len(args) > 1 else None
            return await plugins.open_popup(_arg(args, 0, "plugin"), popup_id)
        case "close-popup":
            return await plugins.close_popup(
                _arg(args, 0, "plugin"), _arg(args, 1, "popup")
            )
        case _:
            raise UsageError(f"unknown command: {command} (try 'help')")


def _render(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


async def _run_cli(hub: Hub) -> None:
    results = await hub.startup()
    for result in results:
        if not result.ok:
            print(f"Plugin {result.plugin_id} failed: {result.error}", file=sys.stderr)

    logger.info("cli_starting", plugins=hub.plugins.plugin_ids)
    print(f"livehub ready, plugins: {', '.join(hub.plugins.plugin_ids) or 'none'}")
    print("Type 'help' for commands (Ctrl+D to exit):\n")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break

            try:
                argv = shlex.split(line)
            except ValueError as e:
                print(f"Parse error: {e}")
                continue
            if not argv:
                continue
            if argv[0].lower() in ("quit", "exit"):
                break

            try:
                result = await execute(hub, argv)
            except UsageError as e:
                print(f"Error: {e}")
                continue
            print(_render(result))
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("cli_shutting_down")
        await hub.shutdown()
        print("\nShutdown complete.")


async def main() -> None:
    try:
        config = LivehubConfig()  # pydantic-settings loads from env
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config)

    try:
        hub = build_hub(config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print("Set LIVEHUB_ADAPTER_FACTORY or create a .env file.", file=sys.stderr)
        sys.exit(1)

    await _run_cli(hub)


def run() -> None:
    asyncio.run(main())
