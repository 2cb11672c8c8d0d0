"""Pending-job queues.

Two interchangeable implementations of :class:`JobQueue`: an in-process
bounded queue and a Valkey/Redis list.  The state store stays the system of
record; queues only carry job ids.
"""

from nebi.server.jobqueue.base import (
    DEQUEUE_TIMEOUT,
    JobQueue,
    QueueClosedError,
    QueuedJob,
    QueueError,
    QueueFullError,
)
from nebi.server.jobqueue.memory import MemoryJobQueue
from nebi.server.jobqueue.valkey import ValkeyJobQueue

__all__ = [
    "DEQUEUE_TIMEOUT",
    "JobQueue",
    "MemoryJobQueue",
    "QueueClosedError",
    "QueueError",
    "QueueFullError",
    "QueuedJob",
    "ValkeyJobQueue",
]
