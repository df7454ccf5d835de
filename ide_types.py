"""Shared value types for the IDE instance orchestrator."""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class InstanceKind(str, Enum):
    CURSOR = "cursor"
    VSCODE = "vscode"
    WINDSURF = "windsurf"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class SelectionStrategy(str, Enum):
    PREVIOUSLY_ACTIVE = "previously_active"
    FIRST_AVAILABLE = "first_available"
    HEALTHIEST_INSTANCE = "healthiest_instance"
    PORT_RANGE_DEFAULT = "port_range_default"
    NONE = "none"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class EventType(str, Enum):
    ACTIVE_CHANGED = "active_changed"
    INSTANCE_LOST = "instance_lost"
    INSTANCE_FOUND = "instance_found"
    HEALTH_CHANGED = "health_changed"


def same_workspace(a: Optional[str], b: Optional[str]) -> bool:
    """Compare workspaces where either side may be only a folder name.

    Window titles carry just the folder name while launched editors are
    recorded with the full path.
    """
    if a is None or b is None:
        return a == b
    if a == b:
        return True
    name_a = os.path.basename(a.rstrip("/\\")) or a
    name_b = os.path.basename(b.rstrip("/\\")) or b
    bare_a = name_a == a
    bare_b = name_b == b
    return (bare_a or bare_b) and name_a == name_b


@dataclass(frozen=True)
class DiscoveredInstance:
    """What a single successful probe learned about a port."""

    port: int
    kind: InstanceKind
    workspace_path: Optional[str] = None
    version: Optional[str] = None
    websocket_url: Optional[str] = None


@dataclass
class Instance:
    id: int
    kind: InstanceKind
    workspace_path: Optional[str] = None
    health: HealthState = HealthState.UNKNOWN
    last_seen: float = 0.0
    last_health_check: float = 0.0
    version: Optional[str] = None

    def copy(self) -> "Instance":
        return replace(self)

    def to_json(self) -> Dict[str, Any]:
        return {
            "port": self.id,
            "kind": self.kind.value,
            "workspacePath": self.workspace_path,
            "health": self.health.value,
            "lastSeen": self.last_seen,
            "lastHealthCheck": self.last_health_check,
            "version": self.version,
        }


@dataclass(frozen=True)
class ActiveSelection:
    instance_id: Optional[int]
    selected_at: float
    strategy_used: SelectionStrategy

    def to_json(self) -> Dict[str, Any]:
        return {
            "port": self.instance_id,
            "selectedAt": self.selected_at,
            "strategyUsed": self.strategy_used.value,
        }


@dataclass
class Preference:
    client_id: str
    last_port: Optional[int] = None
    last_workspace_path: Optional[str] = None
    updated_at: float = 0.0

    def to_json(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "lastPort": self.last_port,
            "lastWorkspacePath": self.last_workspace_path,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Preference":
        client_id = data["clientId"]
        if not isinstance(client_id, str) or not client_id:
            raise ValueError("clientId must be a non-empty string")
        port = data.get("lastPort")
        if port is not None and not isinstance(port, int):
            raise ValueError("lastPort must be an integer")
        workspace = data.get("lastWorkspacePath")
        if workspace is not None and not isinstance(workspace, str):
            raise ValueError("lastWorkspacePath must be a string")
        return cls(
            client_id=client_id,
            last_port=port,
            last_workspace_path=workspace,
            updated_at=float(data.get("updatedAt") or 0.0),
        )


@dataclass
class CacheEntry:
    namespace: str
    key: str
    value: Any
    created_at: float
    ttl_ms: int
    priority: Priority = Priority.MEDIUM
    size: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.created_at) * 1000.0 > self.ttl_ms

    def envelope(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "ttlMs": self.ttl_ms,
            "createdAt": self.created_at,
            "priority": self.priority.value,
        }


@dataclass(frozen=True)
class Event:
    """A state transition published through the fan-out.

    ``client_id`` is set only for session-scoped events (active changes);
    instance events are delivered to every subscriber.
    """

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    client_id: Optional[str] = None
    ts: float = field(default_factory=time.time)
    seq: int = 0

    @classmethod
    def active_changed(
        cls,
        client_id: str,
        previous: Optional[int],
        current: Optional[int],
        strategy: SelectionStrategy,
    ) -> "Event":
        return cls(
            EventType.ACTIVE_CHANGED,
            {"previous": previous, "current": current, "strategyUsed": strategy.value},
            client_id=client_id,
        )

    @classmethod
    def instance_lost(cls, port: int) -> "Event":
        return cls(EventType.INSTANCE_LOST, {"id": port})

    @classmethod
    def instance_found(cls, port: int) -> "Event":
        return cls(EventType.INSTANCE_FOUND, {"id": port})

    @classmethod
    def health_changed(cls, port: int, old: HealthState, new: HealthState) -> "Event":
        return cls(EventType.HEALTH_CHANGED, {"id": port, "from": old.value, "to": new.value})

    def to_json(self) -> Dict[str, Any]:
        payload = {"type": self.type.value, "seq": self.seq, "ts": self.ts, "payload": dict(self.data)}
        if self.client_id is not None:
            payload["clientId"] = self.client_id
        return payload
