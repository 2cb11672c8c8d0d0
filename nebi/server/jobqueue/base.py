"""Queue interface shared by the in-memory and Valkey implementations."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Protocol, runtime_checkable

DEQUEUE_TIMEOUT = 5.0


class QueueError(RuntimeError):
    """Base class for queue failures (not raised for an empty queue)."""


class QueueFullError(QueueError):
    """The in-memory queue stayed full for the whole enqueue timeout."""


class QueueClosedError(QueueError):
    """The queue was closed during shutdown."""


@dataclass(frozen=True)
class QueuedJob:
    """The minimal job reference carried through a queue."""

    id: str
    type: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> QueuedJob:
        data = json.loads(raw)
        return cls(id=str(data["id"]), type=str(data["type"]))


@runtime_checkable
class JobQueue(Protocol):
    """FIFO of pending jobs.

    ``dequeue`` returns ``None`` when no job arrived within *timeout*
    seconds; that is the normal idle signal, not an error.
    """

    async def enqueue(self, job: QueuedJob) -> None: ...

    async def dequeue(self, timeout: float = DEQUEUE_TIMEOUT) -> QueuedJob | None: ...

    async def close(self) -> None: ...
