"""Deliver orchestrator events to every connected observer."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import AsyncIterator, Optional, Set

from cache_layer import CacheLayer
from ide_types import Event

logger = logging.getLogger(__name__)


class Subscriber:
    """One observer's bounded outbound queue.

    When the queue is full the oldest event is dropped and the subscriber is
    flagged ``behind``; its transport must resend a full snapshot before
    relying on incremental events again.
    """

    def __init__(self, client_id: str, maxsize: int = 256) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.client_id = client_id
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(1, maxsize))
        self.behind = False
        self.dropped = 0
        self.closed = False

    def wants(self, event: Event) -> bool:
        return event.client_id is None or event.client_id == self.client_id

    def offer(self, event: Event) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass
        try:
            self.queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self.dropped += 1
        if not self.behind:
            logger.info("subscriber %s (%s) fell behind", self.id, self.client_id)
        self.behind = True
        self.queue.put_nowait(event)

    def take_resync(self) -> bool:
        """Return True once if a resync is owed, clearing the flag and stale backlog."""
        if not self.behind:
            return False
        self.behind = False
        while not self.queue.empty():
            self.queue.get_nowait()
        return True

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            if timeout is None:
                return await self.queue.get()
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def __aiter__(self) -> AsyncIterator[Event]:
        while not self.closed:
            yield await self.queue.get()


class EventFanout:
    def __init__(self, queue_size: int = 256, cache: Optional[CacheLayer] = None) -> None:
        self.queue_size = queue_size
        self.cache = cache
        self._subscribers: Set[Subscriber] = set()
        self._sequence = 0

    def subscribe(self, client_id: str) -> Subscriber:
        subscriber = Subscriber(client_id, self.queue_size)
        self._subscribers.add(subscriber)
        logger.debug("subscriber %s joined for %s", subscriber.id, client_id)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        self._subscribers.discard(subscriber)

    def publish(self, event: Event) -> Event:
        """Invalidate cached data for ``event`` and queue it for subscribers; never blocks."""
        self._sequence += 1
        event = replace(event, seq=self._sequence)
        if self.cache is not None:
            try:
                self.cache.handle_event(event)
            except Exception:
                logger.exception("cache invalidation for %s failed", event.type.value)
        for subscriber in list(self._subscribers):
            if subscriber.wants(event):
                subscriber.offer(event)
        logger.debug("published #%d %s %s", event.seq, event.type.value, event.data)
        return event

    def client_ids(self) -> Set[str]:
        return {subscriber.client_id for subscriber in self._subscribers}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            self.unsubscribe(subscriber)
