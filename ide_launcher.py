"""Start and stop editor processes with a remote debugging port."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Dict, List, Optional

from ide_config import OrchestratorConfig
from ide_errors import LaunchFailed
from ide_types import InstanceKind

logger = logging.getLogger(__name__)


@dataclass
class LaunchedEditor:
    port: int
    kind: InstanceKind
    workspace_path: Optional[str]
    proc: asyncio.subprocess.Process


class EditorLauncher:
    """Run configured editor commands and remember the processes it owns."""

    def __init__(self, config: Optional[OrchestratorConfig] = None) -> None:
        self.config = config or OrchestratorConfig()
        self._running: Dict[int, LaunchedEditor] = {}

    def owns(self, port: int) -> bool:
        editor = self._running.get(port)
        return editor is not None and editor.proc.returncode is None

    def build_command(self, kind: InstanceKind, port: int, workspace_path: Optional[str]) -> List[str]:
        template = self.config.launch_commands.get(kind)
        if not template:
            raise LaunchFailed(f"no launch command configured for {kind.value}")
        user_data_dir = os.path.join(self.config.state_dir, "profiles", f"{kind.value}-{port}")
        argv = [part.format(port=port, user_data_dir=user_data_dir) for part in template]
        if workspace_path:
            argv.append(workspace_path)
        return argv

    async def start(self, kind: InstanceKind, port: int, workspace_path: Optional[str] = None) -> LaunchedEditor:
        argv = self.build_command(kind, port, workspace_path)
        if shutil.which(argv[0]) is None and not os.path.exists(argv[0]):
            raise LaunchFailed(f"editor binary not found: {argv[0]}", {"kind": kind.value})
        os.makedirs(os.path.join(self.config.state_dir, "profiles"), exist_ok=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workspace_path if workspace_path and os.path.isdir(workspace_path) else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise LaunchFailed(f"failed to start {argv[0]}: {exc}", {"kind": kind.value}) from exc
        editor = LaunchedEditor(port=port, kind=kind, workspace_path=workspace_path, proc=proc)
        self._running[port] = editor
        logger.info("started %s on port %s (pid %s)", kind.value, port, proc.pid)
        return editor

    async def stop(self, port: int, grace: float = 3.0) -> bool:
        editor = self._running.pop(port, None)
        if editor is None:
            return False
        proc = editor.proc
        if proc.returncode is not None:
            return True
        try:
            proc.terminate()
        except ProcessLookupError:
            return True
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        logger.info("stopped %s on port %s", editor.kind.value, port)
        return True
