"""Pick the active instance for a client from a registry snapshot.

``select_active`` is pure: the same snapshot and preference always produce
the same instance and strategy. Strategies are tried in order:

1. previously_active: the preferred port is present and healthy or not yet checked.
2. healthiest_instance: with more than one candidate to choose from, the
   lowest healthy port.
3. first_available: the lowest port that is not unreachable.
4. port_range_default: nothing is registered at all; the caller may offer to
   start an editor.

A registry whose instances are all unreachable yields strategy ``none``.
"""
from __future__ import annotations

import time
from typing import Iterable, List, Optional

from ide_types import ActiveSelection, HealthState, Instance, Preference, SelectionStrategy

PREFERRED_STATES = {HealthState.HEALTHY, HealthState.UNKNOWN}


def is_selectable(instance: Optional[Instance]) -> bool:
    return instance is not None and instance.health != HealthState.UNREACHABLE


def select_active(
    snapshot: Iterable[Instance],
    preference: Optional[Preference],
    now: Optional[float] = None,
) -> ActiveSelection:
    at = time.time() if now is None else now
    instances: List[Instance] = sorted(snapshot, key=lambda item: item.id)
    if not instances:
        return ActiveSelection(None, at, SelectionStrategy.PORT_RANGE_DEFAULT)

    if preference is not None and preference.last_port is not None:
        for instance in instances:
            if instance.id == preference.last_port and instance.health in PREFERRED_STATES:
                return ActiveSelection(instance.id, at, SelectionStrategy.PREVIOUSLY_ACTIVE)

    candidates = [instance for instance in instances if is_selectable(instance)]
    if not candidates:
        return ActiveSelection(None, at, SelectionStrategy.NONE)

    if len(candidates) > 1:
        for instance in candidates:
            if instance.health == HealthState.HEALTHY:
                return ActiveSelection(instance.id, at, SelectionStrategy.HEALTHIEST_INSTANCE)

    return ActiveSelection(candidates[0].id, at, SelectionStrategy.FIRST_AVAILABLE)
