"""Mirror job logs onto a Valkey/Redis pub/sub channel.

Lets an API process that is not running the job (multi-instance deployments)
stream its live output.  Publish failures are logged and ignored so a broker
outage never fails a job.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

CHANNEL_TTL_SECONDS = 3600


def channel_name(job_id: str) -> str:
    return f"logs:{job_id}"


class ValkeyLogPublisher:
    """Write-side of the ``logs:{job_id}`` channel."""

    def __init__(self, client: aioredis.Redis, job_id: str) -> None:
        self._client = client
        self.job_id = job_id
        self.channel = channel_name(job_id)
        self._warned = False

    async def write(self, data: str) -> None:
        try:
            await self._client.publish(self.channel, data)
        except RedisError as exc:
            if not self._warned:
                logger.warning("Failed to publish logs for job {} to {}: {}", self.job_id, self.channel, exc)
                self._warned = True

    async def set_ttl(self, seconds: int = CHANNEL_TTL_SECONDS) -> None:
        try:
            await self._client.expire(self.channel, seconds)
        except RedisError as exc:
            logger.warning("Failed to set TTL on {}: {}", self.channel, exc)


async def subscribe_channel(
    client: aioredis.Redis,
    job_id: str,
    *,
    poll_timeout: float = 1.0,
) -> AsyncIterator[str | None]:
    """Yield chunks published on ``logs:{job_id}``.

    Yields ``None`` after every *poll_timeout* seconds without a message so
    the caller can check whether the job has finished meanwhile.
    """
    pubsub = client.pubsub()
    await pubsub.subscribe(channel_name(job_id))
    try:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=poll_timeout)
            if message is None:
                yield None
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            yield str(data)
    finally:
        await pubsub.unsubscribe(channel_name(job_id))
        await pubsub.aclose()
