"""In-memory table of known editor instances keyed by port."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ide_types import DiscoveredInstance, HealthState, Instance, same_workspace

logger = logging.getLogger(__name__)

RemovalListener = Callable[[Instance, str], None]


@dataclass
class UpsertResult:
    instance: Instance
    created: bool = False
    replaced: bool = False


class InstanceRegistry:
    """Owns every ``Instance``.

    Mutators are called only from the orchestrator's state owner; readers get
    copies so they never observe a half-applied change.
    """

    def __init__(self) -> None:
        self._instances: Dict[int, Instance] = {}
        self._removal_listeners: List[RemovalListener] = []

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    def upsert(self, found: DiscoveredInstance, now: Optional[float] = None) -> UpsertResult:
        now = time.time() if now is None else now
        current = self._instances.get(found.port)
        if current is None:
            instance = Instance(
                id=found.port,
                kind=found.kind,
                workspace_path=found.workspace_path,
                last_seen=now,
                version=found.version,
            )
            self._instances[found.port] = instance
            logger.info("registered %s on port %s", found.kind.value, found.port)
            return UpsertResult(instance.copy(), created=True)

        workspace_changed = (
            found.workspace_path is not None
            and current.workspace_path is not None
            and not same_workspace(found.workspace_path, current.workspace_path)
        )
        if found.kind != current.kind or workspace_changed:
            # Another process took over the port.
            instance = Instance(
                id=found.port,
                kind=found.kind,
                workspace_path=found.workspace_path,
                last_seen=now,
                version=found.version,
            )
            self._instances[found.port] = instance
            logger.info(
                "port %s now serves %s (%s), was %s (%s)",
                found.port,
                found.kind.value,
                found.workspace_path,
                current.kind.value,
                current.workspace_path,
            )
            return UpsertResult(instance.copy(), replaced=True)

        current.last_seen = now
        if current.workspace_path is None:
            current.workspace_path = found.workspace_path
        if found.version:
            current.version = found.version
        return UpsertResult(current.copy())

    def mark_health(
        self, port: int, health: HealthState, now: Optional[float] = None
    ) -> Optional[HealthState]:
        """Record a health result and return the previous state, or ``None`` if unknown port."""
        instance = self._instances.get(port)
        if instance is None:
            return None
        previous = instance.health
        instance.health = health
        instance.last_health_check = time.time() if now is None else now
        if health != HealthState.UNREACHABLE:
            instance.last_seen = instance.last_health_check
        return previous

    def set_workspace(self, port: int, workspace_path: Optional[str]) -> Optional[Instance]:
        instance = self._instances.get(port)
        if instance is None:
            return None
        instance.workspace_path = workspace_path
        return instance.copy()

    def remove(self, port: int, reason: str = "removed") -> Optional[Instance]:
        instance = self._instances.pop(port, None)
        if instance is None:
            return None
        logger.info("removed instance on port %s (%s)", port, reason)
        for listener in list(self._removal_listeners):
            listener(instance.copy(), reason)
        return instance.copy()

    def get(self, port: int) -> Optional[Instance]:
        instance = self._instances.get(port)
        return instance.copy() if instance else None

    def all(self) -> List[Instance]:
        return [self._instances[port].copy() for port in sorted(self._instances)]

    def __contains__(self, port: object) -> bool:
        return port in self._instances

    def __len__(self) -> int:
        return len(self._instances)
