"""In-process bounded job queue."""

from __future__ import annotations

import asyncio

from loguru import logger

from nebi.server.jobqueue.base import DEQUEUE_TIMEOUT, QueueClosedError, QueuedJob, QueueFullError


class MemoryJobQueue:
    """Bounded ``asyncio.Queue`` of :class:`QueuedJob`.

    ``enqueue`` blocks while the queue is full, up to *enqueue_timeout*
    seconds (``None`` or ``<= 0`` blocks indefinitely), then raises
    ``QueueFullError``.  Jobs are lost on process exit; startup recovery
    re-enqueues rows still ``pending`` in the database.
    """

    def __init__(self, maxsize: int = 100, *, enqueue_timeout: float | None = 5.0) -> None:
        self._queue: asyncio.Queue[QueuedJob] = asyncio.Queue(maxsize=maxsize)
        self._enqueue_timeout = enqueue_timeout if enqueue_timeout and enqueue_timeout > 0 else None
        self._closed = False

    async def enqueue(self, job: QueuedJob) -> None:
        if self._closed:
            raise QueueClosedError
        try:
            await asyncio.wait_for(self._queue.put(job), timeout=self._enqueue_timeout)
        except TimeoutError:
            msg = f"job queue is full (capacity {self._queue.maxsize})"
            raise QueueFullError(msg) from None
        logger.debug("Queue: enqueued job {} ({})", job.id, job.type)

    async def dequeue(self, timeout: float = DEQUEUE_TIMEOUT) -> QueuedJob | None:
        if self._closed and self._queue.empty():
            raise QueueClosedError
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    async def close(self) -> None:
        self._closed = True

    def qsize(self) -> int:
        return self._queue.qsize()
