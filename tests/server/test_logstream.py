"""Tests for the log broker, the job log writer and the Redis log mirror."""

from __future__ import annotations

import asyncio

import pytest
import redis.asyncio as aioredis

from nebi.server.logstream import (
    COMPLETED_MARKER,
    JobLogWriter,
    LogBroker,
    LogBuffer,
    ValkeyLogPublisher,
    failed_marker,
    is_terminal_marker,
    subscribe_channel,
)
from nebi.server.logstream.valkey import channel_name

# -- Broker ----------------------------------------------------------------------


async def test_fan_out_to_every_subscriber() -> None:
    broker = LogBroker()
    first = broker.subscribe("job-1")
    second = broker.subscribe("job-1")
    other = broker.subscribe("job-2")

    assert broker.publish("job-1", "hello\n") == 2
    assert await first.get(timeout=1) == "hello\n"
    assert await second.get(timeout=1) == "hello\n"
    with pytest.raises(TimeoutError):
        await other.get(timeout=0.05)


async def test_subscribers_only_see_later_messages() -> None:
    broker = LogBroker()
    broker.publish("job-1", "before\n")
    sub = broker.subscribe("job-1")
    broker.publish("job-1", "after\n")
    assert await sub.get(timeout=1) == "after\n"


async def test_full_subscriber_drops_without_blocking() -> None:
    broker = LogBroker(subscriber_buffer=2)
    slow = broker.subscribe("job-1")
    fast = broker.subscribe("job-1")

    delivered = [broker.publish("job-1", f"line {i}\n") for i in range(3)]
    assert delivered == [2, 2, 0]
    assert slow.dropped == 1
    assert fast.dropped == 1
    assert await slow.get(timeout=1) == "line 0\n"


async def test_close_ends_iteration() -> None:
    broker = LogBroker()
    broker.open("job-1")
    sub = broker.subscribe("job-1")
    assert broker.is_active("job-1")

    broker.publish("job-1", "a")
    broker.publish("job-1", "b")
    broker.close("job-1")

    assert [chunk async for chunk in sub] == ["a", "b"]
    assert not broker.is_active("job-1")
    assert not broker.has_subscribers("job-1")
    # End-of-stream is sticky.
    assert await sub.get(timeout=1) is None


async def test_close_with_full_queue_still_signals_end() -> None:
    broker = LogBroker(subscriber_buffer=1)
    sub = broker.subscribe("job-1")
    broker.publish("job-1", "only")
    broker.close("job-1")
    assert await sub.get(timeout=1) is None


async def test_unsubscribe() -> None:
    broker = LogBroker()
    sub = broker.subscribe("job-1")
    assert broker.subscriber_count("job-1") == 1

    broker.unsubscribe(sub)

    assert broker.subscriber_count("job-1") == 0
    assert broker.publish("job-1", "nobody") == 0
    assert sub.closed


# -- Buffer & writer ---------------------------------------------------------------


def test_log_buffer_tracks_versions() -> None:
    buffer = LogBuffer()
    assert buffer.getvalue() == ""
    assert buffer.version == 0

    buffer.append("a")
    buffer.append("b")
    assert buffer.getvalue() == "ab"
    assert buffer.version == 2


async def test_job_log_writer_records_and_publishes() -> None:
    broker = LogBroker()
    sub = broker.subscribe("job-1")
    buffer = LogBuffer()
    writer = JobLogWriter("job-1", buffer, broker)

    await writer.write("Resolving\n")
    await writer.write("")
    await writer.publish_only(COMPLETED_MARKER)

    assert buffer.getvalue() == "Resolving\n"
    assert await sub.get(timeout=1) == "Resolving\n"
    assert await sub.get(timeout=1) == COMPLETED_MARKER


def test_terminal_markers() -> None:
    assert is_terminal_marker(COMPLETED_MARKER)
    assert failed_marker("boom") == "\n[ERROR] Job failed: boom\n"
    assert is_terminal_marker(failed_marker("boom"))
    assert not is_terminal_marker("regular output\n")


# -- Redis mirror ------------------------------------------------------------------


@pytest.mark.integration
async def test_valkey_mirror_round_trip(redis_client) -> None:
    channel = subscribe_channel(redis_client, "job-1", poll_timeout=0.1)
    # The first poll subscribes and times out.
    assert await anext(channel) is None

    publisher = ValkeyLogPublisher(redis_client, "job-1")
    writer = JobLogWriter("job-1", LogBuffer(), LogBroker(), publisher)
    await writer.write("from another process\n")

    received = None
    for _ in range(20):
        received = await anext(channel)
        if received is not None:
            break
    await channel.aclose()

    assert received == "from another process\n"
    assert publisher.channel == channel_name("job-1") == "logs:job-1"


async def test_valkey_publish_failure_is_ignored() -> None:
    # Point at a closed port: every publish fails but never raises.
    broken = aioredis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.2)
    publisher = ValkeyLogPublisher(broken, "job-1")
    await publisher.write("lost\n")
    await publisher.write("lost again\n")
    await publisher.set_ttl(10)
    await broken.aclose()


async def test_concurrent_writers_keep_all_chunks() -> None:
    buffer = LogBuffer()
    writer = JobLogWriter("job-1", buffer, LogBroker())

    async def pump(tag: str) -> None:
        for i in range(50):
            await writer.write(f"{tag}{i}\n")
            await asyncio.sleep(0)

    await asyncio.gather(pump("out"), pump("err"))
    lines = buffer.getvalue().splitlines()
    assert len(lines) == 100
    assert [line for line in lines if line.startswith("out")] == [f"out{i}" for i in range(50)]
