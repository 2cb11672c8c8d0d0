"""Live job-log fan-out.

- **broker**: in-process publish/subscribe keyed by job id
- **valkey**: optional mirror of the same bytes onto ``logs:{job_id}`` pub/sub
- **writer**: the composed writer a running job streams its output into
"""

from nebi.server.logstream.broker import LogBroker, Subscription
from nebi.server.logstream.valkey import ValkeyLogPublisher, subscribe_channel
from nebi.server.logstream.writer import (
    COMPLETED_MARKER,
    JobLogWriter,
    LogBuffer,
    failed_marker,
    is_terminal_marker,
)

__all__ = [
    "COMPLETED_MARKER",
    "JobLogWriter",
    "LogBroker",
    "LogBuffer",
    "Subscription",
    "ValkeyLogPublisher",
    "failed_marker",
    "is_terminal_marker",
    "subscribe_channel",
]
