"""Periodic and on-demand liveness checks for registered instances."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import aiohttp

from ide_config import OrchestratorConfig
from ide_errors import DriverError, InstanceUnreachable
from ide_types import DiscoveredInstance, HealthState, Instance, same_workspace
from instance_driver import InstanceDriver

logger = logging.getLogger(__name__)

Lookup = Callable[[int], Optional[Instance]]
Reporter = Callable[[int, HealthState, int], Awaitable[None]]
Probe = Callable[[int], Awaitable[Optional[DiscoveredInstance]]]


class HealthMonitor:
    """Run one timer task per tracked port and report each result.

    ``report(port, state, consecutive_failures)`` is awaited after every
    check; the orchestrator decides what a result means for the registry.
    A driver handle is kept per port and reused while it stays alive.
    """

    def __init__(
        self,
        driver: InstanceDriver,
        lookup: Lookup,
        report: Reporter,
        config: Optional[OrchestratorConfig] = None,
        probe: Optional[Probe] = None,
    ) -> None:
        self.driver = driver
        self.lookup = lookup
        self.report = report
        self.config = config or OrchestratorConfig()
        self.probe = probe
        self._tasks: Dict[int, asyncio.Task] = {}
        self._handles: Dict[int, Any] = {}
        self._failures: Dict[int, int] = defaultdict(int)
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._closing: Set[asyncio.Future] = set()
        self._stopping = False

    @property
    def tracked(self) -> list[int]:
        return sorted(self._tasks)

    def failures(self, port: int) -> int:
        return self._failures.get(port, 0)

    def track(self, port: int) -> None:
        if self._stopping or port in self._tasks:
            return
        self._tasks[port] = asyncio.create_task(self._loop(port), name=f"health-{port}")

    def forget(self, port: int) -> None:
        """Stop checking ``port`` immediately; its driver handle is closed in the background."""
        task = self._tasks.pop(port, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._failures.pop(port, None)
        self._locks.pop(port, None)
        handle = self._handles.pop(port, None)
        if handle is not None:
            closing = asyncio.ensure_future(self._disconnect(port, handle))
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)

    async def untrack(self, port: int) -> None:
        self.forget(port)
        await asyncio.gather(*self._closing, return_exceptions=True)

    async def stop(self) -> None:
        self._stopping = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for port in list(self._handles):
            await self._drop_handle(port)
        await asyncio.gather(*self._closing, return_exceptions=True)

    async def _loop(self, port: int) -> None:
        try:
            while not self._stopping and self._tasks.get(port) is asyncio.current_task():
                await asyncio.sleep(self.config.health_interval)
                await self.run_check(port)
        except asyncio.CancelledError:
            return

    async def run_check(self, port: int) -> Optional[HealthState]:
        """Check ``port`` now and report the outcome; None if it is no longer registered."""
        async with self._locks[port]:
            instance = self.lookup(port)
            if instance is None:
                return None
            state = await self.check_once(instance)
            if state == HealthState.UNREACHABLE:
                self._failures[port] += 1
            else:
                self._failures[port] = 0
            failures = self._failures[port]
        try:
            await self.report(port, state, failures)
        except Exception:
            logger.exception("health report for %s failed", port)
        return state

    async def ensure_fresh(self, port: int) -> Optional[HealthState]:
        """Re-check ``port`` if its last result is older than the staleness threshold."""
        instance = self.lookup(port)
        if instance is None:
            return None
        age = time.time() - instance.last_health_check
        if instance.last_health_check and age <= self.config.staleness_threshold:
            return instance.health
        return await self.run_check(port)

    async def check_once(self, instance: Instance) -> HealthState:
        started = time.monotonic()
        try:
            alive = await asyncio.wait_for(self._ping(instance.id), timeout=self.config.per_port_timeout)
        except asyncio.TimeoutError:
            logger.debug("%s", InstanceUnreachable(f"health check on {instance.id} timed out"))
            await self._drop_handle(instance.id)
            return HealthState.UNREACHABLE
        except (DriverError, aiohttp.ClientError, OSError) as exc:
            logger.debug("%s", InstanceUnreachable(f"health check on {instance.id} failed: {exc}"))
            await self._drop_handle(instance.id)
            return HealthState.UNREACHABLE
        if not alive:
            await self._drop_handle(instance.id)
            return HealthState.UNREACHABLE

        elapsed = time.monotonic() - started
        if elapsed > self.config.slow_response_threshold:
            logger.info("instance %s answered slowly (%.2fs)", instance.id, elapsed)
            return HealthState.DEGRADED

        if self.probe is not None and instance.workspace_path:
            found = await self.probe(instance.id)
            if (
                found is not None
                and found.workspace_path
                and not same_workspace(found.workspace_path, instance.workspace_path)
            ):
                logger.info(
                    "instance %s serves %r, expected %r", instance.id, found.workspace_path, instance.workspace_path
                )
                return HealthState.DEGRADED
        return HealthState.HEALTHY

    async def _ping(self, port: int) -> bool:
        handle = self._handles.get(port)
        if handle is not None:
            if await self.driver.is_alive(handle):
                return True
            await self._drop_handle(port)
        handle = await self.driver.connect(port)
        self._handles[port] = handle
        return await self.driver.is_alive(handle)

    async def _drop_handle(self, port: int) -> None:
        handle = self._handles.pop(port, None)
        if handle is not None:
            await self._disconnect(port, handle)

    async def _disconnect(self, port: int, handle: Any) -> None:
        try:
            await self.driver.disconnect(handle)
        except Exception as exc:
            logger.debug("disconnect from %s failed: %s", port, exc)
