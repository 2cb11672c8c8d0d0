"""Job worker pool.

A single dispatcher task drains the queue and spawns one handler task per
job, bounded by a semaphore of ``max_workers`` slots.  Handlers for the
same workspace additionally serialize on a per-workspace lock; a job only
becomes ``running`` once it holds that lock, so at most one job per
workspace is ever ``running``.

Handler lifecycle for a job::

    pending --(lock acquired)--> running --+--> completed
                                           +--> failed (error text)

While a job runs, its output is appended to a :class:`LogBuffer` that a
background task flushes to the job row every ``flush_interval`` seconds,
fanned out to live subscribers through the :class:`LogBroker`, and
mirrored to ``logs:{job_id}`` when Redis is configured.

All durable state lives in PostgreSQL.  Queue entries are only hints: a
job that was dequeued but never marked ``running`` stays ``pending`` and
is re-enqueued by :meth:`Worker.recover` at the next startup.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

from loguru import logger

from nebi.server.jobqueue import DEQUEUE_TIMEOUT, QueueClosedError, QueuedJob, QueueError
from nebi.server.logstream import COMPLETED_MARKER, JobLogWriter, LogBroker, LogBuffer, ValkeyLogPublisher, failed_marker
from nebi.server.managers import jobs as jobs_mgr
from nebi.server.managers import packages as packages_mgr
from nebi.server.managers import versions as versions_mgr
from nebi.server.managers import workspaces as workspaces_mgr
from nebi.server.managers.errors import NotFoundError
from nebi.server.models.enums import JobStatus, JobType, WorkspaceStatus
from nebi.server.pkgmgr import PackageInfo, PackageManagerError

if TYPE_CHECKING:
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from nebi.server.auth.rbac import AccessControl
    from nebi.server.db.tables import Job, Workspace
    from nebi.server.executor import WorkspaceExecutor
    from nebi.server.jobqueue import JobQueue

IDLE_SLEEP = 0.1
ERROR_BACKOFF = 1.0

CANCELLED_ERROR = "cancelled"


class JobError(Exception):
    """Expected job failure; the message is stored as the job's error."""


def packages_from_metadata(metadata: dict[str, Any]) -> list[str]:
    """Read ``metadata["packages"]`` as a list of names.

    Accepts any sequence of scalars (JSON round-trips may yield numbers);
    blank entries are dropped.
    """
    raw = metadata.get("packages")
    if isinstance(raw, str) or not isinstance(raw, Sequence):
        msg = "Job metadata has no package list"
        raise JobError(msg)
    packages = [str(p).strip() for p in raw if p is not None and str(p).strip()]
    if not packages:
        msg = "Job metadata has no package list"
        raise JobError(msg)
    return packages


def _format_list(items: Sequence[str]) -> str:
    return "[" + ", ".join(items) + "]"


class _WorkspaceLocks:
    """Reference-counted ``asyncio.Lock`` per workspace id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, workspace_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(workspace_id, asyncio.Lock())
        self._users[workspace_id] = self._users.get(workspace_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[workspace_id] -= 1
            if self._users[workspace_id] == 0:
                del self._users[workspace_id]
                del self._locks[workspace_id]

    def __len__(self) -> int:
        return len(self._locks)


class Worker:
    """Bounded-concurrency job processor."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        executor: WorkspaceExecutor,
        broker: LogBroker,
        acl: AccessControl | None = None,
        redis: aioredis.Redis | None = None,
        max_workers: int = 10,
        flush_interval: float = 2.0,
        channel_ttl: int = 3600,
        instance_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._executor = executor
        self._broker = broker
        self._acl = acl
        self._redis = redis
        self.max_workers = max(max_workers, 0)
        self._flush_interval = flush_interval
        self._channel_ttl = channel_ttl
        self.instance_id = instance_id

        self._slots = asyncio.Semaphore(self.max_workers)
        self._locks = _WorkspaceLocks()
        self._tasks: set[asyncio.Task[None]] = set()
        self._dispatcher: asyncio.Task[None] | None = None
        self._drain_event = asyncio.Event()
        self._drain_event.set()

    # -- Lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        """Start the dispatcher.

        With ``max_workers == 0`` nothing is consumed; the API refuses job
        requests in that configuration.
        """
        if self._dispatcher is not None:
            return
        if self.max_workers == 0:
            logger.warning("Worker disabled (max_workers=0); job requests will be rejected")
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="nebi-dispatcher")
        logger.info("Worker started (max_workers={})", self.max_workers)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop dispatching, wait for in-flight jobs, then cancel stragglers.

        Cancelled jobs are recorded as failed with reason ``cancelled``.
        """
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None

        if self._tasks:
            logger.info("Worker: waiting for {} in-flight job(s)", len(self._tasks))
            drained = await self.wait_until_drained(timeout)
            if not drained:
                pending = list(self._tasks)
                logger.warning("Worker: cancelling {} job(s) after {}s", len(pending), timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker stopped")

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no handler is running.  ``False`` if *timeout* expired first."""
        if not self._tasks:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def recover(self) -> int:
        """Reconcile the database with an empty worker after a restart.

        Jobs this instance left ``running`` are failed, as are workspaces
        stuck in ``creating`` or ``deleting`` with no live job.  Every
        ``pending`` job is re-enqueued.  Returns the number of re-enqueued jobs.
        """
        async with self._session_factory() as db:
            interrupted = await jobs_mgr.fail_interrupted_jobs(db, self.instance_id)
            if interrupted:
                logger.warning("Startup recovery: marked {} interrupted jobs as failed", interrupted)
            stuck = await workspaces_mgr.fail_stuck_workspaces(db)
            if stuck:
                logger.warning("Startup recovery: marked {} stuck workspaces as failed", stuck)
            pending = await jobs_mgr.pending_jobs(db)

        requeued = 0
        for job in pending:
            try:
                await self._queue.enqueue(QueuedJob(id=job.id, type=job.type))
            except QueueError as exc:
                logger.error("Startup recovery: could not re-enqueue job {}: {}", job.id, exc)
                continue
            requeued += 1
        if requeued:
            logger.info("Startup recovery: re-enqueued {} pending jobs", requeued)
        return requeued

    # -- Dispatch ----------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                item = await self._queue.dequeue(timeout=DEQUEUE_TIMEOUT)
            except QueueClosedError:
                logger.info("Worker: queue closed, dispatcher exiting")
                return
            except QueueError as exc:
                logger.warning("Worker: dequeue failed ({}), retrying in {}s", exc, ERROR_BACKOFF)
                await asyncio.sleep(ERROR_BACKOFF)
                continue

            if item is None:
                await asyncio.sleep(IDLE_SLEEP)
                continue

            await self._slots.acquire()
            self._spawn(item)

    def _spawn(self, item: QueuedJob) -> None:
        task = asyncio.create_task(self._handle(item), name=f"nebi-job-{item.id}")
        self._tasks.add(task)
        self._drain_event.clear()
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if not self._tasks:
            self._drain_event.set()

    async def process(self, item: QueuedJob) -> None:
        """Run one job in the current task, outside the slot pool."""
        await self._handle(item)

    # -- Handler -----------------------------------------------------------------

    async def _handle(self, item: QueuedJob) -> None:
        try:
            async with self._session_factory() as db:
                try:
                    job = await jobs_mgr.get_job(db, item.id)
                except NotFoundError:
                    logger.warning("Worker: job {} not found, skipping", item.id)
                    return
            if job.status != JobStatus.PENDING:
                logger.debug("Worker: job {} is {}, skipping", job.id, job.status)
                return

            async with self._locks.hold(job.workspace_id), self._session_factory() as db:
                if not await jobs_mgr.mark_running(db, job.id, self.instance_id):
                    logger.debug("Worker: job {} already claimed, skipping", job.id)
                    return
                await self._run_job(db, job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Worker: failed to process job {}", item.id)

    async def _run_job(self, db: AsyncSession, job: Job) -> None:
        buffer = LogBuffer()
        mirror = ValkeyLogPublisher(self._redis, job.id) if self._redis is not None else None
        writer = JobLogWriter(job.id, buffer, self._broker, mirror)
        self._broker.open(job.id)
        flusher = asyncio.create_task(self._flush_periodically(job.id, buffer), name=f"nebi-flush-{job.id}")

        logger.info("Job {} ({}) started on workspace {}", job.id, job.type, job.workspace_id)
        status = JobStatus.COMPLETED
        error: str | None = None
        cancelled = False
        try:
            await self._execute(db, job, writer)
        except asyncio.CancelledError:
            status, error, cancelled = JobStatus.FAILED, CANCELLED_ERROR, True
        except (JobError, PackageManagerError, NotFoundError) as exc:
            status, error = JobStatus.FAILED, str(exc) or type(exc).__name__
        except Exception as exc:
            logger.exception("Job {} panicked", job.id)
            status, error = JobStatus.FAILED, f"Job panicked: {exc}"
        finally:
            flusher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await flusher

        try:
            await self._finish(job, buffer, status, error)
            await writer.publish_only(COMPLETED_MARKER if error is None else failed_marker(error))
            if mirror is not None:
                await mirror.set_ttl(self._channel_ttl)
        finally:
            self._broker.close(job.id)

        if error is None:
            logger.info("Job {} ({}) completed", job.id, job.type)
        else:
            logger.warning("Job {} ({}) failed: {}", job.id, job.type, error)
        if cancelled:
            raise asyncio.CancelledError

    async def _finish(self, job: Job, buffer: LogBuffer, status: JobStatus, error: str | None) -> None:
        # The handler's session may be mid-statement after a cancellation.
        async with self._session_factory() as db:
            if not await jobs_mgr.finish_job(db, job.id, status, logs=buffer.getvalue(), error=error):
                logger.warning("Job {} was finalized by another process; keeping its recorded state", job.id)
                return
            if error is not None and job.type in (JobType.CREATE, JobType.DELETE):
                await workspaces_mgr.set_status(db, job.workspace_id, WorkspaceStatus.FAILED)

    async def _flush_periodically(self, job_id: str, buffer: LogBuffer) -> None:
        flushed = 0
        while True:
            await asyncio.sleep(self._flush_interval)
            version = buffer.version
            if version == flushed:
                continue
            try:
                async with self._session_factory() as db:
                    await jobs_mgr.update_logs(db, job_id, buffer.getvalue())
            except Exception as exc:
                logger.warning("Failed to flush logs for job {}: {}", job_id, exc)
                continue
            flushed = version

    # -- Job types ---------------------------------------------------------------

    async def _execute(self, db: AsyncSession, job: Job, writer: JobLogWriter) -> None:
        try:
            ws = await workspaces_mgr.get_workspace(db, job.workspace_id)
        except NotFoundError:
            msg = f"Workspace {job.workspace_id} not found or deleted"
            raise JobError(msg) from None

        match job.type:
            case JobType.CREATE:
                await self._run_create(db, job, ws, writer)
            case JobType.INSTALL:
                await self._run_install(db, job, ws, writer)
            case JobType.REMOVE:
                await self._run_remove(db, job, ws, writer)
            case JobType.DELETE:
                await self._run_delete(db, ws, writer)
            case JobType.ROLLBACK:
                await self._run_rollback(db, job, ws, writer)
            case _:
                msg = f"Unknown job type: {job.type}"
                raise JobError(msg)

    async def _run_create(self, db: AsyncSession, job: Job, ws: Workspace, writer: JobLogWriter) -> None:
        await workspaces_mgr.set_status(db, ws.id, WorkspaceStatus.CREATING)
        manifest = job.metadata_.get("pixi_toml") or None
        path = await self._executor.create_workspace(ws, writer, manifest)

        installed = await self._refresh_packages(db, ws)
        size = await self._executor.workspace_size(ws)
        await workspaces_mgr.mark_ready(db, ws.id, path=str(path), size_bytes=size)
        await self._snapshot(db, job, ws, installed, "Initial workspace creation")

    async def _run_install(self, db: AsyncSession, job: Job, ws: Workspace, writer: JobLogWriter) -> None:
        packages = packages_from_metadata(job.metadata_)
        await self._executor.install_packages(ws, packages, writer)

        installed = await self._refresh_packages(db, ws)
        await workspaces_mgr.set_size(db, ws.id, await self._executor.workspace_size(ws))
        await self._snapshot(db, job, ws, installed, f"Installed packages: {_format_list(packages)}")

    async def _run_remove(self, db: AsyncSession, job: Job, ws: Workspace, writer: JobLogWriter) -> None:
        packages = packages_from_metadata(job.metadata_)
        await self._executor.remove_packages(ws, packages, writer)

        installed = await self._refresh_packages(db, ws)
        await workspaces_mgr.set_size(db, ws.id, await self._executor.workspace_size(ws))
        await self._snapshot(db, job, ws, installed, f"Removed packages: {_format_list(packages)}")

    async def _run_delete(self, db: AsyncSession, ws: Workspace, writer: JobLogWriter) -> None:
        await workspaces_mgr.set_status(db, ws.id, WorkspaceStatus.DELETING)
        await self._executor.delete_workspace(ws, writer)
        await packages_mgr.delete_packages(db, ws.id)
        await workspaces_mgr.soft_delete(db, ws.id, acl=self._acl)

    async def _run_rollback(self, db: AsyncSession, job: Job, ws: Workspace, writer: JobLogWriter) -> None:
        version_id = job.metadata_.get("version_id")
        if not version_id:
            msg = "Job metadata has no version_id"
            raise JobError(msg)
        try:
            version = await versions_mgr.get_version(db, ws.id, str(version_id))
        except NotFoundError:
            msg = f"Version {version_id} does not belong to workspace {ws.id}"
            raise JobError(msg) from None

        await writer.write(f"Rolling back to version {version.version_number}\n")
        await self._executor.restore_files(ws, version.manifest_content, version.lock_file_content)
        await self._executor.install_from_manifest(ws, writer)

        installed = await self._refresh_packages(db, ws)
        await workspaces_mgr.set_size(db, ws.id, await self._executor.workspace_size(ws))
        await writer.write("Rollback completed successfully\n")
        await self._snapshot(
            db,
            job,
            ws,
            installed,
            f"Rolled back to version {version.version_number}",
            files=(version.manifest_content, version.lock_file_content),
        )

    # -- Helpers -----------------------------------------------------------------

    async def _refresh_packages(self, db: AsyncSession, ws: Workspace) -> list[PackageInfo]:
        """Replace the workspace's package rows with the adapter's listing.

        A listing failure keeps the stored rows; the mutation already happened
        on disk, so the job carries on to the size update and snapshot.
        """
        try:
            installed = await self._executor.list_packages(ws)
        except PackageManagerError as exc:
            logger.warning("Failed to list packages for workspace {}, keeping stored rows: {}", ws.id, exc)
            rows = await packages_mgr.list_packages(db, ws.id)
            return [PackageInfo(name=row.name, version=row.version) for row in rows]
        await packages_mgr.replace_packages(db, ws.id, installed)
        return installed

    async def _snapshot(
        self,
        db: AsyncSession,
        job: Job,
        ws: Workspace,
        installed: list[PackageInfo],
        description: str,
        *,
        files: tuple[str, str] | None = None,
    ) -> None:
        """Record a version.  Failures are logged; the job still completes."""
        try:
            manifest, lock = files if files is not None else await self._executor.read_project_files(ws)
            await versions_mgr.create_version(
                db,
                ws.id,
                manifest_content=manifest,
                lock_file_content=lock,
                package_metadata=[p.to_dict() for p in installed],
                job_id=job.id,
                created_by=job.metadata_.get("user_id") or ws.owner_id,
                description=description,
            )
        except Exception:
            logger.exception("Failed to snapshot workspace {} after job {}", ws.id, job.id)
            await db.rollback()
