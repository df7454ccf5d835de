#!/usr/bin/env python3
"""Interactive CLI for the IDE orchestrator without the HTTP server."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import threading
from typing import Any, Dict, Optional

from ide_config import OrchestratorConfig, configure_logging
from ide_errors import OrchestratorError
from ide_orchestrator import DEFAULT_CLIENT, Orchestrator, install_signal_handlers
from ide_types import Event, EventType, InstanceKind


EVENT_COLOURS: Dict[str, str] = {
    EventType.ACTIVE_CHANGED.value: "\x1b[38;5;39m",
    EventType.INSTANCE_FOUND.value: "\x1b[38;5;71m",
    EventType.INSTANCE_LOST.value: "\x1b[38;5;203m",
    EventType.HEALTH_CHANGED.value: "\x1b[38;5;178m",
    "muted": "\x1b[38;5;244m",
}
RESET = "\x1b[0m"


class Palette:
    """ANSI colours per event type; plain text when output is not a terminal."""

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled

    def paint(self, key: str, text: str) -> str:
        colour = EVENT_COLOURS.get(key) if self.enabled else None
        return f"{colour}{text}{RESET}" if colour else text


class CommandReader:
    """Feed lines typed on stdin to the event loop; end of input becomes ``:quit``."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.lines: asyncio.Queue[str] = asyncio.Queue()
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._read, name="cli-stdin", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        self._done.set()

    def _push(self, line: str) -> None:
        self.loop.call_soon_threadsafe(self.lines.put_nowait, line)

    def _read(self) -> None:
        for raw in iter(sys.stdin.readline, ""):
            if self._done.is_set():
                return
            self._push(raw.rstrip("\n"))
        self._push(":quit")


HELP = """Commands (prefix :)\n""" "\n" \
    "  :help                       Show this help\n" \
    "  :instances                  List known editor instances\n" \
    "  :active                     Show the active instance\n" \
    "  :switch <port>              Make <port> the active instance\n" \
    "  :start [kind] [workspace]   Launch an editor (cursor, vscode, windsurf)\n" \
    "  :stop <port>                Stop and forget an instance\n" \
    "  :discover                   Run a discovery pass now\n" \
    "  :workspace <port> [path]    Set or clear an instance's workspace\n" \
    "  :status                     Orchestrator status\n" \
    "  :cache                      Cache statistics\n" \
    "  :reset                      Forget this client's preference\n" \
    "  :quit | :exit               Quit\n"


class Printer:
    """Write one line per orchestrator event."""

    LABELS = {
        EventType.ACTIVE_CHANGED: "active",
        EventType.INSTANCE_FOUND: "found",
        EventType.INSTANCE_LOST: "lost",
        EventType.HEALTH_CHANGED: "health",
    }

    def __init__(self, palette: Palette) -> None:
        self.palette = palette
        self.show_health = True

    def describe(self, ev: Event) -> str:
        data = ev.data
        if ev.type == EventType.ACTIVE_CHANGED:
            return f"{data.get('previous')} → {data.get('current')} ({data.get('strategyUsed')})"
        if ev.type == EventType.HEALTH_CHANGED:
            return f"port {data.get('id')}: {data.get('from')} → {data.get('to')}"
        return f"port {data.get('id')}"

    def event(self, ev: Event) -> None:
        if ev.type == EventType.HEALTH_CHANGED and not self.show_health:
            return
        seq = self.palette.paint("muted", f"[{ev.seq:03d}]")
        label = self.palette.paint(ev.type.value, f"{self.LABELS[ev.type]:<7}")
        sys.stdout.write(f"{seq} {label} {self.describe(ev)}\n")
        sys.stdout.flush()

    def resync(self) -> None:
        sys.stdout.write(self.palette.paint("muted", "(missed events; run :instances to refresh)") + "\n")
        sys.stdout.flush()


def format_instances(orch: Orchestrator, client_id: str) -> str:
    instances = orch.available_instances()
    if not instances:
        return "No editor instances found."
    selection = orch.status(client_id).get("active") or {}
    lines = ["Instances:"]
    for item in instances:
        marker = "*" if item.id == selection.get("port") else " "
        workspace = item.workspace_path or "-"
        version = f" {item.version}" if item.version else ""
        lines.append(f" {marker} {item.id}  {item.kind.value}{version}  [{item.health.value}]  {workspace}")
    return "\n".join(lines)


def dump(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


async def handle_command(orch: Orchestrator, printer: Printer, raw: str, client_id: str = DEFAULT_CLIENT) -> bool:
    text = raw.strip()
    if not text:
        return True

    if text[0] not in {":", "/", "."}:
        print("Commands start with ':'. Try :help")
        return True

    parts = text[1:].split()
    if not parts:
        return True
    cmd = parts[0].lower()
    args = parts[1:]

    if cmd in {"quit", "exit"}:
        return False

    if cmd in {"help", "?"}:
        print(HELP)
        return True

    try:
        if cmd in {"instances", "ls"}:
            print(format_instances(orch, client_id))
        elif cmd == "active":
            instance = await orch.get_active_instance(client_id)
            selection = await orch.session(client_id)
            print(f"Active: {instance.id} {instance.kind.value} ({selection.strategy_used.value})")
            if instance.workspace_path:
                print(f"Workspace: {instance.workspace_path}")
        elif cmd == "switch":
            if len(args) != 1 or not args[0].isdigit():
                print("Usage: :switch <port>")
                return True
            selection = await orch.switch(client_id, int(args[0]))
            print(f"Switched to {selection.instance_id}")
        elif cmd == "stop":
            if len(args) != 1 or not args[0].isdigit():
                print("Usage: :stop <port>")
                return True
            result = await orch.stop_instance(int(args[0]))
            suffix = " (process terminated)" if result.get("terminated") else ""
            print(f"Stopped {result['port']}{suffix}")
        elif cmd == "start":
            kind = InstanceKind.CURSOR
            if args and args[0].lower() in {k.value for k in InstanceKind}:
                kind = InstanceKind(args.pop(0).lower())
            workspace = os.path.abspath(os.path.expanduser(" ".join(args))) if args else None
            instance = await orch.start_instance(client_id, workspace_path=workspace, kind=kind)
            print(f"Started {instance.kind.value} on {instance.id}")
        elif cmd == "discover":
            instances = await orch.discover_now()
            print(f"Discovery found {len(instances)} instance(s).")
        elif cmd == "workspace":
            if not args or not args[0].isdigit():
                print("Usage: :workspace <port> [path]")
                return True
            path = " ".join(args[1:]) or None
            instance = await orch.set_workspace(int(args[0]), path)
            print(f"{instance.id} workspace: {instance.workspace_path or '-'}")
        elif cmd == "status":
            print(dump(orch.status(client_id)))
        elif cmd == "cache":
            print(dump(orch.cache.stats()))
        elif cmd == "reset":
            existed = await orch.reset_client(client_id)
            print("Preference cleared." if existed else "No stored preference.")
        elif cmd == "health":
            if not args or args[0].lower() not in {"on", "off"}:
                print("Usage: :health on|off")
                return True
            printer.show_health = args[0].lower() == "on"
        else:
            print(f"Unknown command: {cmd}. Try :help")
    except OrchestratorError as exc:
        print(f"{exc.code}: {exc}")
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Interactive IDE orchestrator")
    parser.add_argument("--client", default=DEFAULT_CLIENT, help="Client id whose selection this session drives")
    parser.add_argument("--state-dir", default=None, help="Directory holding preferences and cache state")
    parser.add_argument("--probe-host", default=None, help="Host the editors' debugging ports listen on")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("--no-colour", action="store_true", help="Disable ANSI colours")
    parser.add_argument("--script", default=None, help="Run commands from a file and exit")
    return parser


async def run_cli(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    config = OrchestratorConfig.from_env(
        state_dir=args.state_dir, probe_host=args.probe_host, log_level=args.log_level
    )
    configure_logging(config.log_level, json_format=config.log_json)

    colours_enabled = sys.stdout.isatty() and (not args.no_colour)
    printer = Printer(Palette(enabled=colours_enabled))

    orch = Orchestrator(config)
    await orch.start()
    sub = orch.subscribe(args.client)
    print(format_instances(orch, args.client))

    reader: Optional[CommandReader] = None
    script_lines: list[str] = []
    if args.script:
        if not os.path.exists(args.script):
            print(f"Script file not found: {args.script}")
            await orch.stop()
            return
        with open(args.script, "r", encoding="utf-8") as handle:
            script_lines = [line.rstrip("\n") for line in handle]
        script_lines.append(":quit")
    else:
        reader = CommandReader(loop)
        reader.start()

    async def pump_events() -> None:
        async for ev in sub:
            if sub.take_resync():
                printer.resync()
                continue
            printer.event(ev)

    async def pump_input() -> None:
        try:
            if script_lines:
                for line in script_lines:
                    if not await handle_command(orch, printer, line, args.client):
                        stop_event.set()
                        return
                return
            assert reader is not None
            while not stop_event.is_set():
                line = await reader.lines.get()
                if not await handle_command(orch, printer, line, args.client):
                    stop_event.set()
                    return
        except asyncio.CancelledError:
            return

    tasks = [
        asyncio.create_task(pump_events(), name="events"),
        asyncio.create_task(pump_input(), name="input"),
    ]

    await stop_event.wait()

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    if reader:
        reader.close()
    orch.unsubscribe(sub)
    await orch.stop()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        asyncio.run(run_cli(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
