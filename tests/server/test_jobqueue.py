"""Tests for the in-memory and Valkey job queues."""

from __future__ import annotations

import asyncio

import pytest

from nebi.server.jobqueue import MemoryJobQueue, QueueClosedError, QueuedJob, QueueFullError, ValkeyJobQueue


def _job(n: int) -> QueuedJob:
    return QueuedJob(id=f"job-{n}", type="install")


def test_queued_job_json() -> None:
    job = QueuedJob(id="abc", type="create")
    assert QueuedJob.from_json(job.to_json()) == job
    assert QueuedJob.from_json(b'{"id": "x", "type": "delete", "extra": 1}') == QueuedJob(id="x", type="delete")


# -- Memory --------------------------------------------------------------------


async def test_memory_fifo() -> None:
    queue = MemoryJobQueue(10)
    for n in range(3):
        await queue.enqueue(_job(n))
    assert queue.qsize() == 3
    assert [await queue.dequeue(timeout=1) for _ in range(3)] == [_job(0), _job(1), _job(2)]


async def test_memory_dequeue_timeout_returns_none() -> None:
    queue = MemoryJobQueue(10)
    assert await queue.dequeue(timeout=0.05) is None


async def test_memory_enqueue_times_out_when_full() -> None:
    queue = MemoryJobQueue(1, enqueue_timeout=0.05)
    await queue.enqueue(_job(0))
    with pytest.raises(QueueFullError):
        await queue.enqueue(_job(1))


async def test_memory_enqueue_waits_for_room() -> None:
    queue = MemoryJobQueue(1, enqueue_timeout=None)
    await queue.enqueue(_job(0))

    pending = asyncio.create_task(queue.enqueue(_job(1)))
    await asyncio.sleep(0.05)
    assert not pending.done()

    assert await queue.dequeue(timeout=1) == _job(0)
    await asyncio.wait_for(pending, timeout=1)
    assert await queue.dequeue(timeout=1) == _job(1)


async def test_memory_close() -> None:
    queue = MemoryJobQueue(10)
    await queue.enqueue(_job(0))
    await queue.close()

    with pytest.raises(QueueClosedError):
        await queue.enqueue(_job(1))
    # Already-queued jobs can still be drained.
    assert await queue.dequeue(timeout=1) == _job(0)
    with pytest.raises(QueueClosedError):
        await queue.dequeue(timeout=1)


# -- Valkey --------------------------------------------------------------------


@pytest.mark.integration
async def test_valkey_fifo(redis_client) -> None:
    queue = ValkeyJobQueue(redis_client, key="nebi:test-jobs")
    for n in range(3):
        await queue.enqueue(_job(n))
    assert await queue.length() == 3

    assert [await queue.dequeue(timeout=1) for _ in range(3)] == [_job(0), _job(1), _job(2)]
    assert await queue.dequeue(timeout=1) is None


@pytest.mark.integration
async def test_valkey_drops_malformed_entries(redis_client) -> None:
    queue = ValkeyJobQueue(redis_client, key="nebi:test-jobs")
    await redis_client.rpush("nebi:test-jobs", "not json")
    await queue.enqueue(_job(1))

    assert await queue.dequeue(timeout=1) is None
    assert await queue.dequeue(timeout=1) == _job(1)


@pytest.mark.integration
async def test_valkey_each_job_popped_once(redis_client) -> None:
    first = ValkeyJobQueue(redis_client, key="nebi:test-jobs")
    second = ValkeyJobQueue(redis_client, key="nebi:test-jobs")
    for n in range(10):
        await first.enqueue(_job(n))

    popped = await asyncio.gather(*(q.dequeue(timeout=1) for q in [first, second] * 5))
    assert sorted(job.id for job in popped) == sorted(f"job-{n}" for n in range(10))
