"""Job records: lookup, status transitions, log persistence and recovery.

Timestamps are written with the database clock (``now()``) so that
``created_at <= started_at <= completed_at`` holds for every job.
"""

from __future__ import annotations

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.db.tables import Job
from nebi.server.managers.errors import NotFoundError
from nebi.server.managers.workspaces import visible_workspace_ids
from nebi.server.models.enums import JobStatus

INTERRUPTED_ERROR = "Interrupted by server restart"


class JobNotFoundError(NotFoundError):
    """Raised when a job does not exist or is hidden from the caller."""

    resource = "Job"


async def get_job(db: AsyncSession, job_id: str) -> Job:
    """Get a job by ID.  Raises ``JobNotFoundError`` if missing."""
    job = await db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def get_visible_job(db: AsyncSession, job_id: str, user_id: str) -> Job:
    """Get a job on a workspace the user can see."""
    stmt = select(Job).where(Job.id == job_id, Job.workspace_id.in_(visible_workspace_ids(user_id)))
    job = await db.scalar(stmt.execution_options(populate_existing=True))
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def list_jobs(
    db: AsyncSession,
    user_id: str,
    *,
    workspace_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Job]:
    """Jobs on workspaces visible to *user_id*, newest first."""
    stmt = (
        select(Job)
        .where(Job.workspace_id.in_(visible_workspace_ids(user_id)))
        .order_by(Job.created_at.desc(), Job.id)
    )
    if workspace_id is not None:
        stmt = stmt.where(Job.workspace_id == workspace_id)
    if status is not None:
        stmt = stmt.where(Job.status == status)
    result = await db.execute(stmt.limit(limit).offset(offset))
    return list(result.scalars().all())


async def mark_running(db: AsyncSession, job_id: str, worker_id: str | None = None) -> bool:
    """Move a ``pending`` job to ``running`` and record the claiming instance.

    Returns ``False`` when the job is missing or no longer pending, e.g. a
    duplicate queue entry for a job that already ran.
    """
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
        .values(status=str(JobStatus.RUNNING), started_at=func.now(), worker_id=worker_id)
    )
    await db.commit()
    return bool(result.rowcount)


async def update_logs(db: AsyncSession, job_id: str, logs: str) -> None:
    await db.execute(update(Job).where(Job.id == job_id).values(logs=logs))
    await db.commit()


async def finish_job(
    db: AsyncSession,
    job_id: str,
    status: JobStatus,
    *,
    logs: str,
    error: str | None = None,
) -> bool:
    """Record the terminal state.  ``started_at`` is backfilled if unset.

    A job that is already ``completed`` or ``failed`` keeps its state and
    ``False`` is returned.
    """
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]))
        .values(
            status=str(status),
            logs=logs,
            error=error,
            started_at=func.coalesce(Job.started_at, func.now()),
            completed_at=func.now(),
        )
    )
    await db.commit()
    return bool(result.rowcount)


async def fail_interrupted_jobs(db: AsyncSession, worker_id: str | None = None) -> int:
    """Mark jobs left ``running`` by a previous process as ``failed``.

    With *worker_id*, only jobs claimed by that instance (or by no recorded
    instance) are touched, so siblings sharing the database keep theirs.
    """
    stmt = update(Job).where(Job.status == JobStatus.RUNNING)
    if worker_id is not None:
        stmt = stmt.where(or_(Job.worker_id == worker_id, Job.worker_id.is_(None)))
    result = await db.execute(
        stmt.values(status=str(JobStatus.FAILED), error=INTERRUPTED_ERROR, completed_at=func.now())
    )
    await db.commit()
    return result.rowcount or 0


async def pending_jobs(db: AsyncSession) -> list[Job]:
    """All ``pending`` jobs in creation order."""
    result = await db.execute(
        select(Job).where(Job.status == JobStatus.PENDING).order_by(Job.created_at, Job.id)
    )
    return list(result.scalars().all())
