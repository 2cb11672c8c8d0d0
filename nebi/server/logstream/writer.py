"""Composed log writer for a running job.

Every chunk the adapter emits goes to three places, in order:

1. :class:`LogBuffer` -- the text persisted to the job row
2. the in-process :class:`~nebi.server.logstream.broker.LogBroker`
3. the optional Valkey mirror
"""

from __future__ import annotations

import threading

from nebi.server.logstream.broker import LogBroker
from nebi.server.logstream.valkey import ValkeyLogPublisher


class LogBuffer:
    """Append-only text buffer guarded by a lock.

    stdout and stderr pumps append concurrently while the flush task reads
    snapshots.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._lock = threading.Lock()
        self._version = 0

    def append(self, chunk: str) -> None:
        with self._lock:
            self._parts.append(chunk)
            self._version += 1

    def getvalue(self) -> str:
        with self._lock:
            if len(self._parts) > 1:
                self._parts = ["".join(self._parts)]
            return self._parts[0] if self._parts else ""

    @property
    def version(self) -> int:
        """Incremented on every append; lets the flusher skip unchanged buffers."""
        with self._lock:
            return self._version


class JobLogWriter:
    """``LogWriter`` that records, fans out and mirrors a job's output."""

    def __init__(
        self,
        job_id: str,
        buffer: LogBuffer,
        broker: LogBroker,
        mirror: ValkeyLogPublisher | None = None,
    ) -> None:
        self.job_id = job_id
        self.buffer = buffer
        self._broker = broker
        self._mirror = mirror

    async def write(self, data: str) -> None:
        if not data:
            return
        self.buffer.append(data)
        self._broker.publish(self.job_id, data)
        if self._mirror is not None:
            await self._mirror.write(data)

    async def publish_only(self, data: str) -> None:
        """Send *data* to live subscribers without recording it in the buffer."""
        self._broker.publish(self.job_id, data)
        if self._mirror is not None:
            await self._mirror.write(data)


# -- Terminal markers ----------------------------------------------------------

COMPLETED_MARKER = "\n[COMPLETED] Job finished successfully\n"
_FAILED_PREFIX = "\n[ERROR] Job failed: "


def failed_marker(error: str) -> str:
    return f"{_FAILED_PREFIX}{error}\n"


def is_terminal_marker(chunk: str) -> bool:
    """Whether *chunk* is the last line a job publishes."""
    return chunk == COMPLETED_MARKER or chunk.startswith(_FAILED_PREFIX)
