"""Job endpoints and live log streaming.

``GET /jobs/{id}/stream`` is a Server-Sent-Events stream:

- ``event: log`` -- a chunk of output (first the persisted log text, then
  live chunks as they are published)
- ``event: done`` -- the job's terminal status; the stream then ends

Live chunks come from the in-process broker when this process runs the
job (or no Redis is configured), otherwise from the ``logs:{job_id}``
Redis channel.  Subscribers only see chunks published after they connect;
the job row's ``logs`` column covers everything flushed before that.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sse_starlette.sse import EventSourceResponse

from nebi.server.db.tables import Job
from nebi.server.deps import Broker, CurrentUser, DbSession, RedisClient
from nebi.server.logstream import LogBroker, Subscription, is_terminal_marker, subscribe_channel
from nebi.server.managers import jobs as jobs_mgr
from nebi.server.models.api import JobResponse
from nebi.server.models.enums import JobStatus
from nebi.server.routers.errors import http_errors

router = APIRouter(prefix="/jobs", tags=["jobs"])

POLL_INTERVAL = 1.0
PING_INTERVAL = 15


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    db: DbSession,
    user: CurrentUser,
    workspace_id: str | None = Query(None, description="Only jobs of this workspace."),
    job_status: str | None = Query(None, alias="status", description="Filter by status (e.g. 'running')."),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[Job]:
    """Jobs on workspaces visible to the caller, newest first."""
    return await jobs_mgr.list_jobs(
        db, user.id, workspace_id=workspace_id, status=job_status, limit=limit, offset=offset
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, db: DbSession, user: CurrentUser) -> Job:
    """A single job including its accumulated logs."""
    with http_errors():
        return await jobs_mgr.get_visible_job(db, job_id, user.id)


@router.get("/{job_id}/stream")
async def stream_job(
    job_id: str,
    request: Request,
    db: DbSession,
    user: CurrentUser,
    broker: Broker,
    redis: RedisClient,
) -> EventSourceResponse:
    """Stream a job's log output as Server-Sent Events."""
    with http_errors():
        await jobs_mgr.get_visible_job(db, job_id, user.id)

    events = _log_events(
        job_id,
        session_factory=request.app.state.db_session_factory,
        broker=broker,
        redis=redis,
    )
    return EventSourceResponse(events, ping=PING_INTERVAL)


# -- Event generation ------------------------------------------------------------


async def _job_state(session_factory: async_sessionmaker[AsyncSession], job_id: str) -> tuple[JobStatus, str]:
    async with session_factory() as db:
        job = await jobs_mgr.get_job(db, job_id)
        return JobStatus(job.status), job.logs


async def _log_events(
    job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    broker: LogBroker,
    redis: aioredis.Redis | None,
) -> AsyncIterator[dict[str, Any]]:
    # Subscribe before reading the persisted logs so no live chunk is missed.
    local = broker.subscribe(job_id)
    try:
        status, logs = await _job_state(session_factory, job_id)
        if logs:
            yield {"event": "log", "data": logs}

        if not status.is_terminal:
            if redis is not None and not broker.is_active(job_id):
                chunks = _remote_chunks(redis, job_id, session_factory)
            else:
                chunks = _local_chunks(local, job_id, session_factory, broker)
            async for chunk in chunks:
                yield {"event": "log", "data": chunk}
            status, _logs = await _job_state(session_factory, job_id)

        yield {"event": "done", "data": str(status)}
    finally:
        broker.unsubscribe(local)


async def _local_chunks(
    sub: Subscription,
    job_id: str,
    session_factory: async_sessionmaker[AsyncSession],
    broker: LogBroker,
) -> AsyncIterator[str]:
    while True:
        try:
            chunk = await sub.get(timeout=POLL_INTERVAL)
        except TimeoutError:
            # The job may have finished before this subscription existed.
            status, _logs = await _job_state(session_factory, job_id)
            if status.is_terminal and not broker.is_active(job_id):
                return
            continue
        if chunk is None:
            return
        yield chunk


async def _remote_chunks(
    redis: aioredis.Redis,
    job_id: str,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[str]:
    channel = subscribe_channel(redis, job_id, poll_timeout=POLL_INTERVAL)
    try:
        async for chunk in channel:
            if chunk is None:
                status, _logs = await _job_state(session_factory, job_id)
                if status.is_terminal:
                    return
                continue
            yield chunk
            if is_terminal_marker(chunk):
                return
    finally:
        await channel.aclose()
