#!/usr/bin/env python3
"""Core orchestration logic: discovery, selection, health and fan-out."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from cache_layer import CacheLayer
from event_fanout import EventFanout, Subscriber
from health_monitor import HealthMonitor
from ide_config import OrchestratorConfig
from ide_discovery import InstanceDiscoverer
from ide_errors import (
    InstanceNotFound,
    InstanceUnreachable,
    InvalidRequest,
    LaunchFailed,
    NoInstanceAvailable,
    SwitchTimeout,
)
from ide_launcher import EditorLauncher
from ide_types import (
    ActiveSelection,
    DiscoveredInstance,
    Event,
    HealthState,
    Instance,
    InstanceKind,
    Preference,
    SelectionStrategy,
)
from instance_driver import CdpInstanceDriver, InstanceDriver
from instance_registry import InstanceRegistry
from kv_store import KeyValueStore
from preference_store import PreferenceStore
from selection_policy import is_selectable, select_active

logger = logging.getLogger(__name__)

DEFAULT_CLIENT = "default"
HOUSEKEEPING_SECONDS = 60.0

Command = Tuple[Callable[..., Any], Tuple[Any, ...], "asyncio.Future[Any]"]


class Orchestrator:
    """Own the registry and every client's active selection.

    All mutations run one at a time on the state-owner task (``_submit``);
    discovery, health checks and client requests only prepare inputs and
    hand them over. Readers get snapshot copies.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        driver: Optional[InstanceDriver] = None,
        discoverer: Optional[InstanceDiscoverer] = None,
        launcher: Optional[EditorLauncher] = None,
        store: Optional[KeyValueStore] = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        cfg = self.config
        os.makedirs(cfg.state_dir, exist_ok=True)

        self.store = store or KeyValueStore(cfg.state_file)
        self.preferences = PreferenceStore(self.store, retries=cfg.preference_save_retries)
        self.cache = CacheLayer(
            max_bytes=cfg.cache_max_bytes,
            max_entries=cfg.cache_max_entries,
            default_ttl_ms=cfg.cache_default_ttl_ms,
            store=self.store if cfg.cache_durable else None,
        )
        self.fanout = EventFanout(queue_size=cfg.subscriber_queue_size, cache=self.cache)
        self.registry = InstanceRegistry()
        self.registry.add_removal_listener(self._on_instance_removed)
        self.driver = driver or CdpInstanceDriver(host=cfg.probe_host, timeout=cfg.per_port_timeout)
        self.discoverer = discoverer or InstanceDiscoverer(cfg)
        self.launcher = launcher or EditorLauncher(cfg)
        self.monitor = HealthMonitor(
            self.driver,
            lookup=self.registry.get,
            report=self._on_health_result,
            config=cfg,
            probe=self.discoverer.probe,
        )

        self._sessions: Dict[str, ActiveSelection] = {}
        self._commands: "asyncio.Queue[Command]" = asyncio.Queue()
        self._owner: Optional[asyncio.Task] = None
        self.tasks: List[asyncio.Task] = []
        self._stopping = False
        self.last_discovery_at = 0.0

    # ---------------------------------------------------------------- lifecycle

    async def start(self, discover: bool = True, loops: bool = True) -> None:
        self._ensure_owner()
        if discover:
            await self.discover_now()
        await self._submit(self._restore_sessions)
        if loops:
            self.tasks.append(asyncio.create_task(self._discovery_loop(), name="orch-discovery"))
            self.tasks.append(asyncio.create_task(self._housekeeping(), name="orch-housekeeping"))
        logger.info(
            "orchestrator started: %d instances, %d stored clients",
            len(self.registry),
            len(self._sessions),
        )

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.monitor.stop()
        if self._owner is not None:
            self._owner.cancel()
            await asyncio.gather(self._owner, return_exceptions=True)
        self.fanout.close()
        logger.info("orchestrator stopped")

    def _ensure_owner(self) -> None:
        if self._owner is None or self._owner.done():
            self._owner = asyncio.create_task(self._state_owner(), name="orch-state")

    async def _state_owner(self) -> None:
        try:
            while True:
                fn, args, fut = await self._commands.get()
                if fut.done():
                    continue
                try:
                    result = fn(*args)
                except Exception as exc:
                    if not fut.done():
                        fut.set_exception(exc)
                    continue
                if not fut.done():
                    fut.set_result(result)
        except asyncio.CancelledError:
            while not self._commands.empty():
                _, _, fut = self._commands.get_nowait()
                fut.cancel()

    async def _submit(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._stopping:
            raise RuntimeError("orchestrator is shutting down")
        self._ensure_owner()
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((fn, args, fut))
        return await fut

    async def _discovery_loop(self) -> None:
        try:
            while not self._stopping:
                await asyncio.sleep(self.config.discovery_interval)
                try:
                    await self.discover_now()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("discovery pass failed")
        except asyncio.CancelledError:
            return

    async def _housekeeping(self) -> None:
        try:
            while not self._stopping:
                await asyncio.sleep(HOUSEKEEPING_SECONDS)
                evicted = self.cache.evict_expired()
                if evicted:
                    logger.debug("swept %d expired cache entries", evicted)
                await self._submit(self._prune_sessions)
        except asyncio.CancelledError:
            return

    # ------------------------------------------------------------- client API

    async def discover_now(self) -> List[Instance]:
        found = await self.discoverer.discover()
        ports = await self._submit(self._apply_discovery, found)
        for port in ports:
            self.monitor.track(port)
        return self.registry.all()

    def available_instances(self) -> List[Instance]:
        return self.registry.all()

    async def session(self, client_id: str = DEFAULT_CLIENT) -> ActiveSelection:
        """Current selection for ``client_id``, creating the session on first use."""
        selection = self._sessions.get(client_id)
        if selection is not None:
            return selection
        return await self._submit(self._ensure_session, client_id)

    async def get_active(self, client_id: str = DEFAULT_CLIENT) -> ActiveSelection:
        selection = await self.session(client_id)
        if selection.instance_id is not None:
            # A stale result is refreshed first; a failure re-selects before we read again.
            await self.monitor.ensure_fresh(selection.instance_id)
            selection = self._sessions.get(client_id) or selection
        if selection.instance_id is None:
            raise NoInstanceAvailable(
                "no editor instance is available",
                {"strategyUsed": selection.strategy_used.value, "clientId": client_id},
            )
        return selection

    async def get_active_instance(self, client_id: str = DEFAULT_CLIENT) -> Instance:
        selection = await self.get_active(client_id)
        instance = self.registry.get(selection.instance_id)
        if instance is None:
            raise NoInstanceAvailable("active instance disappeared", {"clientId": client_id})
        return instance

    async def switch(
        self, client_id: str, port: int, timeout: Optional[float] = None
    ) -> ActiveSelection:
        timeout = self.config.switch_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._switch(client_id, port), timeout=timeout)
        except asyncio.TimeoutError:
            raise SwitchTimeout(
                f"switching to port {port} did not finish within {timeout:.1f}s",
                {"port": port, "clientId": client_id},
            ) from None

    async def _switch(self, client_id: str, port: int) -> ActiveSelection:
        if port not in self.registry:
            raise InstanceNotFound(f"no instance on port {port}", {"port": port})
        state = await self.monitor.ensure_fresh(port)
        if state is None:
            raise InstanceNotFound(f"instance on port {port} went away", {"port": port})
        if state == HealthState.UNREACHABLE:
            raise InstanceUnreachable(f"instance on port {port} is unreachable", {"port": port})
        return await self._submit(self._commit_switch, client_id, port)

    async def stop_instance(self, port: int) -> Dict[str, Any]:
        known = port in self.registry
        if not known and not self.launcher.owns(port):
            raise InstanceNotFound(f"no instance on port {port}", {"port": port})
        terminated = await self.launcher.stop(port)
        await self._submit(self._remove_instance, port, "stopped")
        return {"ok": True, "port": port, "terminated": terminated}

    async def start_instance(
        self,
        client_id: str,
        workspace_path: Optional[str] = None,
        kind: InstanceKind | str = InstanceKind.CURSOR,
    ) -> Instance:
        try:
            kind = InstanceKind(kind)
        except ValueError:
            raise InvalidRequest(f"unknown editor kind {kind!r}") from None
        if workspace_path is not None and not isinstance(workspace_path, str):
            raise InvalidRequest("workspacePath must be a string")

        port = await self._free_port(kind)
        editor = await self.launcher.start(kind, port, workspace_path)
        found = await self._wait_for_port(port)
        if found is None:
            await self.launcher.stop(port)
            raise LaunchFailed(
                f"{kind.value} did not open its debugging port {port} in time",
                {"port": port, "pid": editor.proc.pid},
            )
        if workspace_path and not found.workspace_path:
            found = DiscoveredInstance(
                port=found.port,
                kind=found.kind,
                workspace_path=workspace_path,
                version=found.version,
                websocket_url=found.websocket_url,
            )
        instance = await self._submit(self._apply_started, client_id, found)
        self.monitor.track(port)
        return instance

    async def set_workspace(self, port: int, workspace_path: Optional[str]) -> Instance:
        instance = await self._submit(self.registry.set_workspace, port, workspace_path)
        if instance is None:
            raise InstanceNotFound(f"no instance on port {port}", {"port": port})
        return instance

    async def reset_client(self, client_id: str) -> bool:
        return await self._submit(self._reset_client, client_id)

    def subscribe(self, client_id: str = DEFAULT_CLIENT) -> Subscriber:
        return self.fanout.subscribe(client_id)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self.fanout.unsubscribe(subscriber)

    async def snapshot(self, client_id: str = DEFAULT_CLIENT) -> Dict[str, Any]:
        selection = await self.session(client_id)
        return {
            "clientId": client_id,
            "active": selection.to_json(),
            "instances": [instance.to_json() for instance in self.registry.all()],
        }

    def status(self, client_id: str = DEFAULT_CLIENT) -> Dict[str, Any]:
        counts: Dict[str, int] = {state.value: 0 for state in HealthState}
        for instance in self.registry.all():
            counts[instance.health.value] += 1
        selection = self._sessions.get(client_id)
        return {
            "instances": len(self.registry),
            "health": counts,
            "active": selection.to_json() if selection else None,
            "sessions": len(self._sessions),
            "monitoring": self.monitor.tracked,
            "failures": {
                str(port): self.monitor.failures(port)
                for port in self.monitor.tracked
                if self.monitor.failures(port)
            },
            "subscribers": self.fanout.subscriber_count,
            "lastDiscoveryAt": self.last_discovery_at,
            "preferencesDegraded": self.preferences.degraded,
        }

    # ------------------------------------------------------- state-owner ops

    def _apply_discovery(self, found: List[DiscoveredInstance]) -> List[int]:
        fresh: List[int] = []
        for item in found:
            result = self.registry.upsert(item)
            if result.replaced:
                self.fanout.publish(Event.instance_lost(item.port))
            if result.created or result.replaced:
                self.fanout.publish(Event.instance_found(item.port))
                fresh.append(item.port)
        self.last_discovery_at = time.time()
        self._reselect_all()
        return fresh

    def _apply_started(self, client_id: str, found: DiscoveredInstance) -> Instance:
        result = self.registry.upsert(found)
        if result.replaced:
            self.fanout.publish(Event.instance_lost(found.port))
        if result.created or result.replaced:
            self.fanout.publish(Event.instance_found(found.port))
        current = self._sessions.get(client_id)
        if current is None or current.instance_id is None:
            self._set_selection(
                client_id,
                ActiveSelection(found.port, time.time(), SelectionStrategy.FIRST_AVAILABLE),
            )
        self._reselect_all()
        return self.registry.get(found.port) or result.instance

    def _apply_health(self, port: int, state: HealthState, failures: int) -> bool:
        previous = self.registry.mark_health(port, state)
        if previous is None:
            return False
        if previous != state:
            self.fanout.publish(Event.health_changed(port, previous, state))
        # One failure only demotes; the instance stays registered until the threshold.
        if state == HealthState.UNREACHABLE and failures >= self.config.failure_threshold:
            self._remove_instance(port, f"{failures} consecutive failed checks")
            return True
        self._reselect_all()
        return False

    def _remove_instance(self, port: int, reason: str) -> bool:
        return self.registry.remove(port, reason) is not None

    def _on_instance_removed(self, instance: Instance, reason: str) -> None:
        # Runs inside the state owner via InstanceRegistry.remove.
        self.fanout.publish(Event.instance_lost(instance.id))
        self._reselect_all()
        self.monitor.forget(instance.id)

    def _ensure_session(self, client_id: str) -> ActiveSelection:
        if client_id not in self._sessions:
            self._reselect(client_id)
        return self._sessions[client_id]

    def _restore_sessions(self) -> None:
        for client_id in self.preferences.client_ids():
            if client_id not in self._sessions:
                self._reselect(client_id)

    def _prune_sessions(self) -> int:
        """Forget sessions nobody watches and that have no stored preference."""
        keep = self.fanout.client_ids() | set(self.preferences.client_ids())
        stale = [client_id for client_id in self._sessions if client_id not in keep]
        for client_id in stale:
            del self._sessions[client_id]
        if stale:
            logger.debug("dropped %d idle sessions", len(stale))
        return len(stale)

    def _reselect_all(self) -> None:
        for client_id in list(self._sessions):
            self._reselect(client_id)

    def _reselect(self, client_id: str) -> None:
        current = self._sessions.get(client_id)
        if current is not None and current.instance_id is not None:
            if is_selectable(self.registry.get(current.instance_id)):
                return
        selection = select_active(self.registry.all(), self.preferences.load(client_id))
        if current is not None and current.instance_id == selection.instance_id:
            return
        self._set_selection(client_id, selection)

    def _commit_switch(self, client_id: str, port: int) -> ActiveSelection:
        instance = self.registry.get(port)
        if instance is None:
            raise InstanceNotFound(f"no instance on port {port}", {"port": port})
        if not is_selectable(instance):
            raise InstanceUnreachable(f"instance on port {port} is unreachable", {"port": port})
        current = self._sessions.get(client_id)
        if current is not None and current.instance_id == port:
            self._remember(client_id, instance)
            return current
        selection = ActiveSelection(port, time.time(), SelectionStrategy.PREVIOUSLY_ACTIVE)
        self._set_selection(client_id, selection)
        return selection

    def _set_selection(self, client_id: str, selection: ActiveSelection) -> None:
        previous = self._sessions.get(client_id)
        self._sessions[client_id] = selection
        if selection.instance_id is not None:
            instance = self.registry.get(selection.instance_id)
            if instance is not None:
                self._remember(client_id, instance)
        previous_id = previous.instance_id if previous else None
        if previous_id != selection.instance_id:
            logger.info(
                "client %s: active %s -> %s (%s)",
                client_id,
                previous_id,
                selection.instance_id,
                selection.strategy_used.value,
            )
            self.fanout.publish(
                Event.active_changed(client_id, previous_id, selection.instance_id, selection.strategy_used)
            )

    def _remember(self, client_id: str, instance: Instance) -> None:
        pref = self.preferences.load(client_id)
        if (
            pref is not None
            and pref.last_port == instance.id
            and pref.last_workspace_path == instance.workspace_path
        ):
            return
        self.preferences.save(
            Preference(
                client_id=client_id,
                last_port=instance.id,
                last_workspace_path=instance.workspace_path,
                updated_at=time.time(),
            )
        )

    def _reset_client(self, client_id: str) -> bool:
        existed = self.preferences.delete(client_id)
        self._sessions.pop(client_id, None)
        self.cache.invalidate(f"session:{client_id}")
        return existed

    # -------------------------------------------------------------- helpers

    async def _on_health_result(self, port: int, state: HealthState, failures: int) -> None:
        await self._submit(self._apply_health, port, state, failures)

    async def _free_port(self, kind: InstanceKind) -> int:
        start, end = self.config.port_ranges[kind]
        for port in range(start, end + 1):
            if port in self.registry or self.launcher.owns(port):
                continue
            if await self.discoverer.probe(port) is None:
                return port
        raise LaunchFailed(f"no free port left for {kind.value} in {start}-{end}", {"kind": kind.value})

    async def _wait_for_port(self, port: int) -> Optional[DiscoveredInstance]:
        deadline = time.monotonic() + self.config.start_timeout
        while time.monotonic() < deadline:
            found = await self.discoverer.probe(port)
            if found is not None:
                return found
            await asyncio.sleep(0.5)
        return None


def install_signal_handlers(loop: asyncio.AbstractEventLoop, set_event: asyncio.Event) -> None:
    def _handler(*_: Any) -> None:
        set_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass
