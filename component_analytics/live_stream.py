"""
Live event stream.

A pure subscriber of the collector's write path: committed events are fanned
out to in-process subscribers. Slow consumers lose their oldest events rather
than slowing ingestion down.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from component_analytics.schemas import Event

logger = logging.getLogger(__name__)

# Wakes a consumer blocked on an empty queue when its subscription closes
_CLOSED = object()


class Subscription:
    """Bounded queue of events for one consumer. Async-iterable."""

    def __init__(self, stream: "LiveStream", component_id: Optional[str], max_queue_size: int):
        self._stream = stream
        self.component_id = component_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self.closed = False

    def matches(self, event: Event) -> bool:
        return self.component_id is None or event.component_id == self.component_id

    def offer(self, event: Event) -> None:
        """Enqueue without blocking, evicting the oldest event when full."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self) -> Optional[Event]:
        """Next event, or None once the subscription is closed and drained."""
        if self.closed and self.queue.empty():
            return None
        item = await self.queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._stream.unsubscribe(self)
            if self.queue.empty():
                self.queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class LiveStream:
    """In-process publish/subscribe for committed events."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscriptions: List[Subscription] = []

    def subscribe(self, component_id: Optional[str] = None) -> Subscription:
        """
        Subscribe to newly committed events.

        Args:
            component_id: Only receive this component's events (all when None)
        """
        subscription = Subscription(self, component_id, self.max_queue_size)
        self._subscriptions.append(subscription)
        logger.debug(f"Live stream subscriber added ({len(self._subscriptions)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Live stream subscriber removed ({len(self._subscriptions)} total)")

    def publish(self, events: Sequence[Event]) -> None:
        """Fan out events to matching subscribers. Never blocks."""
        for subscription in list(self._subscriptions):
            for event in events:
                if subscription.matches(event):
                    subscription.offer(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
