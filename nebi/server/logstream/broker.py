"""In-process log broker.

Each subscriber owns a bounded queue.  ``publish`` never waits: a subscriber
whose queue is full misses that message, and neither the producer nor the
other subscribers are slowed down.  Subscribers only see messages published
after they subscribed; the job row's ``logs`` column is the replay source.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator

from loguru import logger

SUBSCRIBER_BUFFER = 100


class Subscription:
    """A single subscriber's stream of log chunks for one job.

    Iterate with ``async for chunk in subscription``; iteration ends when the
    broker closes the job or the subscription is cancelled.
    """

    def __init__(self, job_id: str, maxsize: int = SUBSCRIBER_BUFFER) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, chunk: str) -> bool:
        """Queue *chunk* without waiting.  Returns ``False`` if dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        """Signal end-of-stream, evicting the oldest chunk if the queue is full."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> str | None:
        """Return the next chunk, or ``None`` at end-of-stream.

        Raises ``TimeoutError`` if nothing arrives within *timeout*.
        """
        chunk = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if chunk is None:
            # Keep the sentinel for any later reader.
            self._queue.put_nowait(None)
        return chunk

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            chunk = await self.get()
            if chunk is None:
                return
            yield chunk


class LogBroker:
    """Fan out log chunks to subscribers, keyed by job id."""

    def __init__(self, subscriber_buffer: int = SUBSCRIBER_BUFFER) -> None:
        self._subscriber_buffer = subscriber_buffer
        self._subscribers: dict[str, set[Subscription]] = {}
        self._active: set[str] = set()
        self._lock = threading.Lock()

    # -- Producer side -----------------------------------------------------------

    def open(self, job_id: str) -> None:
        """Mark *job_id* as producing logs in this process."""
        with self._lock:
            self._active.add(job_id)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def publish(self, job_id: str, chunk: str) -> int:
        """Deliver *chunk* to every current subscriber.  Returns the delivered count."""
        with self._lock:
            subscribers = list(self._subscribers.get(job_id, ()))
        delivered = 0
        for sub in subscribers:
            if sub.offer(chunk):
                delivered += 1
        return delivered

    def close(self, job_id: str) -> None:
        """End the stream for *job_id*: every subscriber sees end-of-stream."""
        with self._lock:
            subscribers = self._subscribers.pop(job_id, set())
            self._active.discard(job_id)
        for sub in subscribers:
            sub.close()
            if sub.dropped:
                logger.debug("Broker: subscriber on job {} dropped {} chunks", job_id, sub.dropped)

    # -- Consumer side -----------------------------------------------------------

    def subscribe(self, job_id: str) -> Subscription:
        sub = Subscription(job_id, self._subscriber_buffer)
        with self._lock:
            self._subscribers.setdefault(job_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.job_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[sub.job_id]
        sub.close()

    def has_subscribers(self, job_id: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get(job_id))

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))
