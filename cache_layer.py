"""TTL cache for derived data, scoped by namespace.

Entries are grouped into namespaces (``git:<client>``, ``status:<port>``,
``analysis:<workspace>``...) so an event only drops the data it can have made
stale. Which namespaces an event invalidates is declared in
``DEFAULT_INVALIDATION_RULES``; patterns use shell-style wildcards and
``{field}`` placeholders filled from the event payload.

When the cache is over its memory or entry budget it evicts expired entries
first, then the lowest priority, then the least recently used.
"""
from __future__ import annotations

import fnmatch
import json
import logging
import string
import sys
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from ide_errors import CacheWriteFailure
from ide_types import CacheEntry, Event, EventType, Priority
from kv_store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache:"

InvalidationRules = Mapping[EventType, Tuple[str, ...]]

DEFAULT_INVALIDATION_RULES: Dict[EventType, Tuple[str, ...]] = {
    EventType.ACTIVE_CHANGED: ("session:{client_id}", "git:{client_id}"),
    EventType.INSTANCE_LOST: ("instance:{id}", "status:{id}", "chat:{id}"),
}


def estimate_size(value: Any) -> int:
    try:
        return len(json.dumps(value, ensure_ascii=False, default=str).encode("utf-8"))
    except (TypeError, ValueError, RecursionError):
        return sys.getsizeof(value)


def expand_patterns(patterns: Iterable[str], event: Event) -> list[str]:
    """Fill ``{field}`` placeholders; patterns naming an absent field are skipped."""
    fields: Dict[str, Any] = dict(event.data)
    fields["client_id"] = event.client_id
    expanded = []
    for pattern in patterns:
        try:
            names = [name for _, name, _, _ in string.Formatter().parse(pattern) if name]
        except ValueError:
            continue
        if any(fields.get(name) is None for name in names):
            continue
        expanded.append(pattern.format(**fields))
    return expanded


class CacheLayer:
    def __init__(
        self,
        max_bytes: int = 50 * 1024 * 1024,
        max_entries: int = 1000,
        default_ttl_ms: int = 5 * 60 * 1000,
        store: Optional[KeyValueStore] = None,
        rules: Optional[InvalidationRules] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.default_ttl_ms = default_ttl_ms
        self.store = store
        self.rules: Dict[EventType, Tuple[str, ...]] = dict(
            DEFAULT_INVALIDATION_RULES if rules is None else rules
        )
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: "OrderedDict[Tuple[str, str], CacheEntry]" = OrderedDict()
        self._bytes = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._write_failures = 0
        if store is not None:
            self._restore()

    # ------------------------------------------------------------------ reads

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get((namespace, key))
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(self._clock()):
                self._drop((namespace, key))
                self._forget([entry])
                self._misses += 1
                return default
            self._entries.move_to_end((namespace, key))
            self._hits += 1
            return entry.value

    def __contains__(self, item: Tuple[str, str]) -> bool:
        with self._lock:
            entry = self._entries.get(item)
            return entry is not None and not entry.is_expired(self._clock())

    # ----------------------------------------------------------------- writes

    def put(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl_ms: Optional[int] = None,
        priority: Priority | str = Priority.MEDIUM,
    ) -> bool:
        """Store a value. Returns False (and the next ``get`` misses) if it could not be kept."""
        try:
            entry = CacheEntry(
                namespace=namespace,
                key=key,
                value=value,
                created_at=self._clock(),
                ttl_ms=int(self.default_ttl_ms if ttl_ms is None else ttl_ms),
                priority=Priority(priority),
                size=estimate_size(value),
            )
        except (TypeError, ValueError) as exc:
            self._record_failure(CacheWriteFailure(f"rejected {namespace}:{key}: {exc}"))
            return False
        if entry.size > self.max_bytes:
            self._record_failure(
                CacheWriteFailure(f"{namespace}:{key} is larger than the cache budget", {"size": entry.size})
            )
            with self._lock:
                stale = self._drop((namespace, key))
            if stale is not None:
                self._forget([stale])
            return False

        with self._lock:
            self._drop((namespace, key))
            self._entries[(namespace, key)] = entry
            self._bytes += entry.size
            evicted = self._enforce_budget()
            kept = (namespace, key) in self._entries
        self._forget(evicted)
        if kept:
            self._persist(entry)
        return kept

    def invalidate(self, namespace_pattern: str) -> int:
        with self._lock:
            doomed = [
                ident for ident in self._entries
                if fnmatch.fnmatchcase(ident[0], namespace_pattern)
            ]
            removed = [entry for entry in (self._drop(ident) for ident in doomed) if entry is not None]
            self._invalidations += len(removed)
        self._forget(removed)
        if removed:
            logger.debug("invalidated %d entries matching %r", len(removed), namespace_pattern)
        return len(removed)

    def handle_event(self, event: Event) -> int:
        patterns = self.rules.get(event.type)
        if not patterns:
            return 0
        return sum(self.invalidate(pattern) for pattern in expand_patterns(patterns, event))

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [ident for ident, entry in self._entries.items() if entry.is_expired(now)]
            removed = [entry for entry in (self._drop(ident) for ident in expired) if entry is not None]
            self._evictions += len(removed)
        self._forget(removed)
        return len(removed)

    # ------------------------------------------------------------------ stats

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hitRate": (self._hits / lookups) if lookups else 0.0,
                "entryCount": len(self._entries),
                "memoryUsed": self._bytes,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "invalidations": self._invalidations,
                "writeFailures": self._write_failures,
                "namespaces": len({ns for ns, _ in self._entries}),
                "maxBytes": self.max_bytes,
                "maxEntries": self.max_entries,
                "durable": self.store is not None,
            }

    # -------------------------------------------------------------- internals

    def _drop(self, ident: Tuple[str, str]) -> Optional[CacheEntry]:
        entry = self._entries.pop(ident, None)
        if entry is not None:
            self._bytes -= entry.size
        return entry

    def _over_budget(self) -> bool:
        return self._bytes > self.max_bytes or len(self._entries) > self.max_entries

    def _enforce_budget(self) -> list[CacheEntry]:
        evicted: list[CacheEntry] = []
        if not self._over_budget():
            return evicted
        now = self._clock()
        for ident in [i for i, entry in self._entries.items() if entry.is_expired(now)]:
            entry = self._drop(ident)
            if entry is not None:
                evicted.append(entry)
        while self._over_budget() and self._entries:
            # OrderedDict order is least recently used first.
            victim = min(
                enumerate(self._entries.items()),
                key=lambda item: (item[1][1].priority.rank, item[0]),
            )[1][0]
            entry = self._drop(victim)
            if entry is not None:
                evicted.append(entry)
        self._evictions += len(evicted)
        return evicted

    @staticmethod
    def store_key(namespace: str, key: str) -> str:
        return f"{KEY_PREFIX}{namespace}:{key}"

    def _persist(self, entry: CacheEntry) -> None:
        if self.store is None:
            return
        envelope = entry.envelope()
        envelope["namespace"] = entry.namespace
        envelope["key"] = entry.key
        try:
            self.store.set(self.store_key(entry.namespace, entry.key), envelope)
        except (OSError, TypeError, ValueError) as exc:
            self._record_failure(CacheWriteFailure(f"persisting {entry.namespace}:{entry.key} failed: {exc}"))

    def _forget(self, entries: Iterable[CacheEntry]) -> None:
        if self.store is None:
            return
        keys = [self.store_key(entry.namespace, entry.key) for entry in entries]
        if not keys:
            return
        try:
            self.store.delete_many(keys)
        except OSError as exc:
            self._record_failure(CacheWriteFailure(f"removing {len(keys)} persisted entries failed: {exc}"))

    def _record_failure(self, err: CacheWriteFailure) -> None:
        with self._lock:
            self._write_failures += 1
        logger.warning("cache write failed: %s", err)

    def _restore(self) -> None:
        assert self.store is not None
        now = self._clock()
        stale = []
        for store_key in list(self.store.keys(KEY_PREFIX)):
            raw = self.store.get(store_key)
            try:
                entry = CacheEntry(
                    namespace=str(raw["namespace"]),
                    key=str(raw["key"]),
                    value=raw["value"],
                    created_at=float(raw["createdAt"]),
                    ttl_ms=int(raw["ttlMs"]),
                    priority=Priority(raw.get("priority", Priority.MEDIUM.value)),
                )
            except (KeyError, TypeError, ValueError, AttributeError):
                stale.append(store_key)
                continue
            if entry.is_expired(now):
                stale.append(store_key)
                continue
            entry.size = estimate_size(entry.value)
            self._entries[(entry.namespace, entry.key)] = entry
            self._bytes += entry.size
        stale.extend(self.store_key(e.namespace, e.key) for e in self._enforce_budget())
        if stale:
            try:
                self.store.delete_many(stale)
            except OSError as exc:
                logger.warning("could not prune %d stale cache records: %s", len(stale), exc)
        logger.info("restored %d cache entries", len(self._entries))
