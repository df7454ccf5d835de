"""Find editor instances that expose a DevTools endpoint on a port range."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import aiohttp

from ide_config import OrchestratorConfig
from ide_errors import DiscoveryTimeout
from ide_types import DiscoveredInstance, InstanceKind

logger = logging.getLogger(__name__)

KIND_PATTERNS = (
    (InstanceKind.CURSOR, re.compile(r"Cursor/([\d.]+)", re.IGNORECASE)),
    (InstanceKind.WINDSURF, re.compile(r"Windsurf/([\d.]+)", re.IGNORECASE)),
    (InstanceKind.VSCODE, re.compile(r"(?:VSCode|Code)/([\d.]+)", re.IGNORECASE)),
)
TITLE_SUFFIXES = {
    InstanceKind.CURSOR: "cursor",
    InstanceKind.VSCODE: "visual studio code",
    InstanceKind.WINDSURF: "windsurf",
}


def detect_kind(version_info: Dict[str, Any]) -> tuple[Optional[InstanceKind], Optional[str]]:
    """Return ``(kind, version)`` parsed from a ``/json/version`` payload."""
    haystack = " ".join(
        str(version_info.get(key) or "") for key in ("User-Agent", "Browser", "Product")
    )
    for kind, pattern in KIND_PATTERNS:
        match = pattern.search(haystack)
        if match:
            return kind, match.group(1)
    return None, None


def workspace_from_targets(targets: Any, kind: InstanceKind) -> Optional[str]:
    """Pull the workspace name out of editor window titles.

    Editor windows are titled ``"<file> - <workspace> - <Editor>"`` or
    ``"<workspace> - <Editor>"``.
    """
    if not isinstance(targets, list):
        return None
    suffix = TITLE_SUFFIXES.get(kind, "")
    for target in targets:
        if not isinstance(target, dict) or target.get("type") != "page":
            continue
        title = str(target.get("title") or "").strip()
        parts = [part.strip() for part in title.split(" - ") if part.strip()]
        if len(parts) < 2:
            continue
        if suffix and parts[-1].lower() != suffix:
            continue
        return parts[-2]
    return None


class InstanceDiscoverer:
    """Probe ports concurrently and report the ones that answer like an editor."""

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self._session = session

    async def discover(
        self,
        port_start: Optional[int] = None,
        port_end: Optional[int] = None,
        per_port_timeout: Optional[float] = None,
    ) -> List[DiscoveredInstance]:
        default_start, default_end = self.config.full_port_range
        start = default_start if port_start is None else port_start
        end = default_end if port_end is None else port_end
        timeout = self.config.per_port_timeout if per_port_timeout is None else per_port_timeout
        ports = list(range(start, end + 1))
        if not ports:
            return []

        found: List[DiscoveredInstance] = []
        semaphore = asyncio.Semaphore(max(1, self.config.probe_concurrency))

        async def run(session: aiohttp.ClientSession, port: int) -> None:
            async with semaphore:
                instance = await self.probe(port, timeout, session=session)
            if instance is not None:
                found.append(instance)

        async with self._session_scope() as session:
            tasks = [asyncio.create_task(run(session, port), name=f"probe-{port}") for port in ports]
            budget = timeout * len(ports)
            done, pending = await asyncio.wait(tasks, timeout=budget)
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                err = DiscoveryTimeout(
                    f"discovery pass exceeded {budget:.1f}s",
                    {"pending": len(pending), "range": [start, end]},
                )
                logger.warning("%s; keeping %d results", err, len(found))

        found.sort(key=lambda item: item.port)
        logger.debug("discovery %d-%d found %s", start, end, [item.port for item in found])
        return found

    async def probe(
        self,
        port: int,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Optional[DiscoveredInstance]:
        """Probe one port; ``None`` means nothing usable answered in time."""
        timeout = self.config.per_port_timeout if timeout is None else timeout
        try:
            if session is not None:
                return await asyncio.wait_for(self._probe(session, port, timeout), timeout)
            async with self._session_scope() as own:
                return await asyncio.wait_for(self._probe(own, port, timeout), timeout)
        except asyncio.TimeoutError:
            logger.debug("probe %s timed out after %.2fs", port, timeout)
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            logger.debug("probe %s failed: %s", port, exc)
        return None

    async def _probe(
        self, session: aiohttp.ClientSession, port: int, timeout: float
    ) -> Optional[DiscoveredInstance]:
        base = f"http://{self.config.probe_host}:{port}"
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.get(f"{base}/json/version", timeout=client_timeout) as resp:
            if resp.status != 200:
                return None
            info = await resp.json(content_type=None)
        if not isinstance(info, dict) or not (info.get("Browser") or info.get("User-Agent")):
            return None

        kind, version = detect_kind(info)
        if kind is None:
            kind = self.config.kind_for_port(port) or InstanceKind.CURSOR

        workspace = None
        try:
            async with session.get(f"{base}/json/list", timeout=client_timeout) as resp:
                if resp.status == 200:
                    workspace = workspace_from_targets(await resp.json(content_type=None), kind)
        except (aiohttp.ClientError, ValueError) as exc:
            logger.debug("target list on %s unavailable: %s", port, exc)

        return DiscoveredInstance(
            port=port,
            kind=kind,
            workspace_path=workspace,
            version=version,
            websocket_url=info.get("webSocketDebuggerUrl"),
        )

    def _session_scope(self) -> "_SessionScope":
        return _SessionScope(self._session)


class _SessionScope:
    """Borrow the injected session or open a short-lived one."""

    def __init__(self, session: Optional[aiohttp.ClientSession]) -> None:
        self._shared = session
        self._own: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> aiohttp.ClientSession:
        if self._shared is not None:
            return self._shared
        self._own = aiohttp.ClientSession()
        return self._own

    async def __aexit__(self, *exc: Any) -> None:
        if self._own is not None:
            await self._own.close()
