"""Best-effort, non-blocking event notifier.

The notifier is the one-way boundary between the core and its observers
(API WebSocket clients, the event journal, tests). Components publish
lifecycle events; every subscriber owns a bounded queue that it drains at
its own pace.

Publishing never awaits. When a subscriber's queue is full the event is
dropped for that subscriber only and counted in ``Subscription.dropped`` --
a slow or absent consumer can never stall the Connection Manager or the
Signing Orchestrator.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable
from typing import Any
from uuid import uuid4

from hwsigner.models import Event

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class Subscription:
    """A live event stream for one consumer.

    Iterate with ``async for event in subscription``; iteration ends after
    ``close()`` once the already-queued events are drained.
    """

    def __init__(self, notifier: EventNotifier, event_types: Iterable[str], max_queue: int) -> None:
        self.id = uuid4().hex
        self.event_types = frozenset(event_types)
        self.dropped = 0
        self._notifier = notifier
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event_type: str) -> bool:
        return "*" in self.event_types or event_type in self.event_types

    def offer(self, event: Event) -> bool:
        """Queue *event* without blocking. Returns ``False`` if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: float | None = None) -> Event:
        """Return the next event, waiting up to *timeout* seconds."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._notifier.unsubscribe(self)
        try:
            # Wake a consumer blocked on an empty queue.
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        return await self.get()


class EventNotifier:
    """Fan-out of lifecycle events to bounded per-subscriber queues.

    Parameters
    ----------
    max_queue:
        Default queue capacity for new subscriptions.
    """

    def __init__(self, max_queue: int = DEFAULT_QUEUE_SIZE) -> None:
        self._max_queue = max_queue
        self._subscriptions: list[Subscription] = []
        self._seq = itertools.count(1)
        self._latest_seq = 0

    @property
    def latest_seq(self) -> int:
        return self._latest_seq

    def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        source_id: str | None = None,
    ) -> Event:
        """Stamp a sequence number on the event and offer it to subscribers."""
        event = Event(
            seq=next(self._seq),
            event_type=event_type,
            payload=payload or {},
            source_id=source_id,
        )
        self._latest_seq = event.seq

        for sub in list(self._subscriptions):
            if not sub.matches(event_type):
                continue
            if not sub.offer(event):
                logger.debug(
                    "Dropped %s (seq=%d) for slow subscription %s (dropped=%d)",
                    event_type, event.seq, sub.id, sub.dropped,
                )
        return event

    def subscribe(
        self,
        event_types: Iterable[str] | None = None,
        max_queue: int | None = None,
    ) -> Subscription:
        """Open a subscription for *event_types* (default: everything)."""
        sub = Subscription(
            self,
            event_types if event_types is not None else ["*"],
            max_queue if max_queue is not None else self._max_queue,
        )
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions = [
            s for s in self._subscriptions if s.id != subscription.id
        ]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        """End every open subscription."""
        for sub in list(self._subscriptions):
            sub.close()
