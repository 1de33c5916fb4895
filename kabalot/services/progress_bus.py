"""
Per-job publish/subscribe channel for progress snapshots.

Publishing fans a snapshot out to every live subscriber; nothing is buffered
for subscribers that connect later, so a late client only sees snapshots
emitted after it subscribed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set

from kabalot.schemas import ProgressSnapshot

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class Subscription:
    """A single listener attached to a job's progress channel."""

    def __init__(self, bus: "ProgressBus", job_id: str) -> None:
        self._bus = bus
        self.job_id = job_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, item: object) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    async def next(self, timeout: float | None = None) -> Optional[ProgressSnapshot]:
        """Wait for the next snapshot; ``None`` once the channel has closed.

        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """
        if self._closed and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _END_OF_STREAM:
            self._closed = True
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressSnapshot:
        snapshot = await self.next()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class ProgressBus:
    """Registry of per-job channels bridging pipeline events to live clients."""

    def __init__(self) -> None:
        self._channels: Dict[str, Set[Subscription]] = {}
        self._latest: Dict[str, ProgressSnapshot] = {}

    def open(self, job_id: str) -> None:
        """Create the channel for a job; publishing before this is a no-op."""
        self._channels.setdefault(job_id, set())

    def is_open(self, job_id: str) -> bool:
        return job_id in self._channels

    def publish(self, snapshot: ProgressSnapshot) -> int:
        """Fan a snapshot out to current subscribers and return how many got it."""
        subscribers = self._channels.get(snapshot.job_id)
        if subscribers is None:
            logger.debug("Dropping snapshot for closed channel %s", snapshot.job_id)
            return 0
        self._latest[snapshot.job_id] = snapshot
        for subscription in list(subscribers):
            subscription._deliver(snapshot)
        return len(subscribers)

    def latest(self, job_id: str) -> Optional[ProgressSnapshot]:
        """Most recent snapshot published on an open channel."""
        return self._latest.get(job_id)

    def subscribe(self, job_id: str) -> Optional[Subscription]:
        """Attach a listener, or ``None`` when there is nothing left to stream."""
        subscribers = self._channels.get(job_id)
        if subscribers is None:
            return None
        subscription = Subscription(self, job_id)
        subscribers.add(subscription)
        logger.debug("Subscriber attached to %s (%d total)", job_id, len(subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._channels.get(subscription.job_id)
        if subscribers is not None:
            subscribers.discard(subscription)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._channels.get(job_id, ()))

    def close(self, job_id: str) -> None:
        """Tear down a job's channel, ending every attached stream."""
        subscribers = self._channels.pop(job_id, None)
        self._latest.pop(job_id, None)
        if not subscribers:
            return
        for subscription in subscribers:
            subscription._deliver(_END_OF_STREAM)


__all__ = ["ProgressBus", "Subscription"]
