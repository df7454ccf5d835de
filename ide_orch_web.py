#!/usr/bin/env python3
"""HTTP front-end for the IDE orchestrator: REST, SSE events and a websocket channel."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import WSMsgType, web

from ide_config import OrchestratorConfig, configure_logging, parse_duration
from ide_errors import InvalidRequest, OrchestratorError
from ide_orchestrator import DEFAULT_CLIENT, Orchestrator, install_signal_handlers
from ide_types import Event

logger = logging.getLogger(__name__)

CLIENT_HEADER = "X-Client-Id"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def jdump(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def client_id_of(request: web.Request) -> str:
    client = request.headers.get(CLIENT_HEADER) or request.query.get("client") or DEFAULT_CLIENT
    return client.strip() or DEFAULT_CLIENT


async def read_payload(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("request body is not valid JSON") from None
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidRequest("request body must be a JSON object")
    return payload


def port_of(payload: Dict[str, Any]) -> int:
    raw = payload.get("port")
    if isinstance(raw, bool):
        raise InvalidRequest("'port' must be an integer")
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise InvalidRequest("missing or invalid 'port'") from None
    if not 0 < port < 65536:
        raise InvalidRequest(f"port {port} is out of range")
    return port


def timeout_of(payload: Dict[str, Any]) -> Optional[float]:
    if payload.get("timeoutMs") is not None:
        try:
            return float(payload["timeoutMs"]) / 1000.0
        except (TypeError, ValueError):
            raise InvalidRequest("'timeoutMs' must be a number") from None
    if payload.get("timeout") is not None:
        return parse_duration(payload["timeout"], 0.0) or None
    return None


def resync_frame(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "resync", "payload": snapshot}


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except OrchestratorError as exc:
        if exc.http_status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response(exc.to_json(), status=exc.http_status)


# ---------- REST ----------


async def available(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    instances = orch.available_instances()
    return web.json_response({"ok": True, "instances": [item.to_json() for item in instances]})


async def active(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    client_id = client_id_of(request)
    selection = await orch.get_active(client_id)
    instance = orch.registry.get(selection.instance_id)
    return web.json_response(
        {
            "ok": True,
            "clientId": client_id,
            "active": selection.to_json(),
            "instance": instance.to_json() if instance else None,
        }
    )


async def switch(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    payload = await read_payload(request)
    selection = await orch.switch(client_id_of(request), port_of(payload), timeout=timeout_of(payload))
    return web.json_response({"ok": True, "active": selection.to_json()})


async def stop(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    payload = await read_payload(request)
    return web.json_response(await orch.stop_instance(port_of(payload)))


async def start(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    payload = await read_payload(request)
    instance = await orch.start_instance(
        client_id_of(request),
        workspace_path=payload.get("workspacePath"),
        kind=payload.get("kind") or "cursor",
    )
    return web.json_response({"ok": True, "instance": instance.to_json()})


async def status(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    return web.json_response({"ok": True, **orch.status(client_id_of(request))})


async def discover(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    instances = await orch.discover_now()
    return web.json_response({"ok": True, "instances": [item.to_json() for item in instances]})


async def set_workspace(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    payload = await read_payload(request)
    workspace = payload.get("workspacePath")
    if workspace is not None and not isinstance(workspace, str):
        raise InvalidRequest("'workspacePath' must be a string or null")
    instance = await orch.set_workspace(port_of(payload), workspace)
    return web.json_response({"ok": True, "instance": instance.to_json()})


async def reset_preference(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    client_id = client_id_of(request)
    existed = await orch.reset_client(client_id)
    return web.json_response({"ok": True, "clientId": client_id, "deleted": existed})


async def cache_stats(request: web.Request) -> web.Response:
    orch: Orchestrator = request.app["orchestrator"]
    return web.json_response(orch.cache.stats())


# ---------- streams ----------


async def sse(request: web.Request) -> web.StreamResponse:
    orch: Orchestrator = request.app["orchestrator"]
    heartbeat: float = request.app["heartbeat"]
    client_id = client_id_of(request)
    sub = orch.subscribe(client_id)

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)

    async def send(frame: Dict[str, Any]) -> None:
        await response.write(f"data: {jdump(frame)}\n\n".encode())

    try:
        await send(resync_frame(await orch.snapshot(client_id)))
        while not sub.closed:
            event = await sub.next_event(timeout=heartbeat)
            try:
                if sub.take_resync():
                    await send(resync_frame(await orch.snapshot(client_id)))
                elif event is None:
                    await response.write(b": ping\n\n")
                else:
                    await send(event.to_json())
            except ConnectionResetError:
                break
    except (asyncio.CancelledError, RuntimeError):
        pass
    finally:
        orch.unsubscribe(sub)

    return response


async def run_ws_command(orch: Orchestrator, client_id: str, raw: str) -> Dict[str, Any]:
    """Execute one websocket command and build its reply frame."""
    reply: Dict[str, Any] = {"type": "reply"}
    try:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            raise InvalidRequest("command is not valid JSON") from None
        if not isinstance(message, dict):
            raise InvalidRequest("command must be a JSON object")
        if "id" in message:
            reply["id"] = message["id"]
        action = str(message.get("action") or "").lower()
        reply["action"] = action

        if action == "switch":
            selection = await orch.switch(client_id, port_of(message), timeout=timeout_of(message))
            reply["result"] = selection.to_json()
        elif action == "stop":
            reply["result"] = await orch.stop_instance(port_of(message))
        elif action == "start":
            instance = await orch.start_instance(
                client_id,
                workspace_path=message.get("workspacePath"),
                kind=message.get("kind") or "cursor",
            )
            reply["result"] = instance.to_json()
        elif action == "resync":
            reply["result"] = await orch.snapshot(client_id)
        else:
            raise InvalidRequest(f"unknown action {action!r}")
    except OrchestratorError as exc:
        reply.update(exc.to_json())
        return reply
    reply["ok"] = True
    return reply


async def websocket(request: web.Request) -> web.WebSocketResponse:
    orch: Orchestrator = request.app["orchestrator"]
    heartbeat: float = request.app["heartbeat"]
    client_id = client_id_of(request)

    ws = web.WebSocketResponse(heartbeat=heartbeat)
    await ws.prepare(request)
    sub = orch.subscribe(client_id)

    async def pump_events() -> None:
        try:
            await ws.send_str(jdump(resync_frame(await orch.snapshot(client_id))))
            while not ws.closed and not sub.closed:
                event: Optional[Event] = await sub.next_event(timeout=heartbeat)
                if sub.take_resync():
                    await ws.send_str(jdump(resync_frame(await orch.snapshot(client_id))))
                elif event is not None:
                    await ws.send_str(jdump(event.to_json()))
        except (ConnectionResetError, RuntimeError):
            return

    pump = asyncio.create_task(pump_events(), name=f"ws-{sub.id}")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                reply = await run_ws_command(orch, client_id, msg.data)
                await ws.send_str(jdump(reply))
            elif msg.type == WSMsgType.ERROR:
                logger.info("websocket for %s closed with %s", client_id, ws.exception())
                break
    finally:
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        orch.unsubscribe(sub)
    return ws


def create_app(orch: Orchestrator, heartbeat: Optional[float] = None) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app["orchestrator"] = orch
    app["heartbeat"] = orch.config.heartbeat_interval if heartbeat is None else heartbeat
    app.add_routes(
        [
            web.get("/events", sse),
            web.get("/ws", websocket),
            web.get("/api/ide/available", available),
            web.get("/api/ide/active", active),
            web.post("/api/ide/switch", switch),
            web.post("/api/ide/stop", stop),
            web.post("/api/ide/start", start),
            web.get("/api/ide/status", status),
            web.post("/api/ide/discover", discover),
            web.post("/api/ide/workspace", set_workspace),
            web.delete("/api/ide/preference", reset_preference),
            web.get("/api/cache-stats", cache_stats),
        ]
    )
    return app


# ---------- CLI ----------


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IDE instance orchestrator with HTTP and event stream")
    parser.add_argument("--host", default=None, help="Bind address (default 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Server port (default 8766)")
    parser.add_argument("--state-dir", default=None, help="Directory holding preferences and cache state")
    parser.add_argument("--probe-host", default=None, help="Host the editors' debugging ports listen on")
    parser.add_argument("--discovery-interval", default=None, help="Time between discovery passes, e.g. 30s")
    parser.add_argument("--health-interval", default=None, help="Time between health checks, e.g. 15s")
    parser.add_argument(
        "--durable-cache",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Persist cache entries next to preferences",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default INFO)")
    parser.add_argument("--log-json", action="store_true", default=None, help="Emit logs as JSON lines")
    return parser


def config_from_args(args: argparse.Namespace) -> OrchestratorConfig:
    overrides: Dict[str, Any] = {
        "host": args.host,
        "port": args.port,
        "state_dir": args.state_dir,
        "probe_host": args.probe_host,
        "cache_durable": args.durable_cache,
        "log_level": args.log_level,
        "log_json": args.log_json,
    }
    if args.discovery_interval is not None:
        overrides["discovery_interval"] = parse_duration(args.discovery_interval, 30.0)
    if args.health_interval is not None:
        overrides["health_interval"] = parse_duration(args.health_interval, 15.0)
    return OrchestratorConfig.from_env(**overrides)


async def async_main() -> None:
    parser = build_argparser()
    args = parser.parse_args()
    config = config_from_args(args)
    configure_logging(config.log_level, json_format=config.log_json)

    orch = Orchestrator(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    await orch.start()

    app = create_app(orch)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info("orchestrator listening on http://%s:%s/", config.host, config.port)

    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()
        await orch.stop()


def main() -> None:
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
