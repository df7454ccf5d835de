"""Control-channel drivers for editor instances.

The orchestrator only needs to know whether a channel can be opened and
whether it is still alive; everything else a driver can do (reading files,
sending input, walking the UI tree) belongs to downstream consumers.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import aiohttp

from ide_errors import DriverError

logger = logging.getLogger(__name__)


class InstanceDriver(Protocol):
    async def connect(self, port: int) -> Any: ...

    async def disconnect(self, handle: Any) -> None: ...

    async def is_alive(self, handle: Any) -> bool: ...


@dataclass
class CdpHandle:
    port: int
    session: aiohttp.ClientSession
    ws: aiohttp.ClientWebSocketResponse
    ids: "itertools.count[int]" = field(default_factory=lambda: itertools.count(1))


class CdpInstanceDriver:
    """Talk to an editor over the Chrome DevTools Protocol websocket."""

    def __init__(self, host: str = "127.0.0.1", timeout: float = 2.0) -> None:
        self.host = host
        self.timeout = timeout

    async def connect(self, port: int) -> CdpHandle:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        try:
            async with session.get(f"http://{self.host}:{port}/json/version") as resp:
                if resp.status != 200:
                    raise DriverError(f"port {port} answered HTTP {resp.status}")
                info = await resp.json(content_type=None)
            url = info.get("webSocketDebuggerUrl") if isinstance(info, dict) else None
            if not url:
                raise DriverError(f"port {port} exposes no debugger websocket")
            ws = await session.ws_connect(url, heartbeat=None, max_msg_size=0)
        except (DriverError, asyncio.CancelledError):
            await session.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            await session.close()
            raise DriverError(f"cannot connect to port {port}: {exc}") from exc
        logger.debug("connected to debugger on %s", port)
        return CdpHandle(port=port, session=session, ws=ws)

    async def disconnect(self, handle: CdpHandle) -> None:
        try:
            if not handle.ws.closed:
                await handle.ws.close()
        finally:
            await handle.session.close()

    async def is_alive(self, handle: CdpHandle) -> bool:
        if handle.ws.closed:
            return False
        try:
            reply = await asyncio.wait_for(self.call(handle, "Browser.getVersion"), self.timeout)
        except (asyncio.TimeoutError, aiohttp.ClientError, DriverError, ConnectionResetError):
            return False
        return "error" not in reply

    async def call(self, handle: CdpHandle, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        msg_id = next(handle.ids)
        await handle.ws.send_str(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
        while True:
            msg = await handle.ws.receive()
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise DriverError(f"debugger channel on {handle.port} closed ({msg.type})")
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                continue
            # Skip protocol events until our reply arrives.
            if isinstance(data, dict) and data.get("id") == msg_id:
                return data
