"""Valkey/Redis list job queue.

``enqueue`` is ``RPUSH`` of ``{"id": ..., "type": ...}`` onto ``nebi:jobs``;
``dequeue`` is ``BLPOP`` with a short timeout.  Several server processes can
share one list; each job is popped by exactly one of them.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

from nebi.server.jobqueue.base import DEQUEUE_TIMEOUT, QueuedJob, QueueError

QUEUE_KEY = "nebi:jobs"


class ValkeyJobQueue:
    def __init__(self, client: aioredis.Redis, *, key: str = QUEUE_KEY) -> None:
        self._client = client
        self._key = key

    async def enqueue(self, job: QueuedJob) -> None:
        try:
            await self._client.rpush(self._key, job.to_json())
        except RedisError as exc:
            msg = f"failed to enqueue job {job.id}: {exc}"
            raise QueueError(msg) from exc
        logger.debug("Queue: pushed job {} ({}) to {}", job.id, job.type, self._key)

    async def dequeue(self, timeout: float = DEQUEUE_TIMEOUT) -> QueuedJob | None:
        try:
            item = await self._client.blpop([self._key], timeout=timeout)
        except RedisError as exc:
            msg = f"failed to dequeue from {self._key}: {exc}"
            raise QueueError(msg) from exc
        if item is None:
            return None

        _key, raw = item
        try:
            return QueuedJob.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Queue: dropping malformed entry {!r}: {}", raw, exc)
            return None

    async def close(self) -> None:
        """The Redis client is owned by the app lifespan; nothing to release."""

    async def length(self) -> int:
        return int(await self._client.llen(self._key))

