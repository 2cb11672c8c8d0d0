"""Workspace lifecycle: registration, visibility, job requests and state.

Request functions (``create_workspace``, ``request_*``) write the workspace
and/or a ``pending`` job in one transaction.  They never enqueue: the API
layer enqueues after the commit so that a crash in between leaves a
recoverable ``pending`` row rather than a queued job without one.

State functions (``set_status``, ``mark_ready``, ``soft_delete`` ...) are
used by the worker and commit immediately.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from loguru import logger
from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server import pkgmgr
from nebi.server.auth import audit
from nebi.server.db.tables import Job, Permission, Workspace
from nebi.server.managers.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from nebi.server.models.api import DashboardStats, WorkspaceCreate
from nebi.server.models.enums import AuditAction, JobStatus, JobType, RoleName, WorkspaceSource, WorkspaceStatus

if TYPE_CHECKING:
    from nebi.server.auth.rbac import AccessControl


class WorkspaceNotFoundError(NotFoundError):
    """Raised when a workspace does not exist, is deleted, or is hidden."""

    resource = "Workspace"


class DuplicateWorkspaceError(ConflictError):
    """Raised when the owner already has a live workspace with this name."""


class WorkspaceNotReadyError(ValidationError):
    """Raised when a job is requested on a workspace in the wrong status."""

    def __init__(self, workspace_id: str, status: str) -> None:
        self.workspace_id = workspace_id
        self.status = status
        super().__init__(f"Workspace is not ready (status: {status})")


_DELETABLE = frozenset({WorkspaceStatus.READY, WorkspaceStatus.FAILED})


# -- Visibility & access -------------------------------------------------------


def _visible_to(user_id: str):
    """WHERE clause: live workspaces owned by, or shared with, *user_id*."""
    shared = exists().where(Permission.workspace_id == Workspace.id, Permission.user_id == user_id)
    return Workspace.deleted_at.is_(None) & or_(Workspace.owner_id == user_id, shared)


def visible_workspace_ids(user_id: str):
    """Subquery of workspace ids visible to *user_id*, for joins elsewhere."""
    return select(Workspace.id).where(_visible_to(user_id)).scalar_subquery()


async def list_workspaces(db: AsyncSession, user_id: str) -> list[Workspace]:
    """Live workspaces the user owns or has any permission on, newest first."""
    stmt = select(Workspace).where(_visible_to(user_id)).order_by(Workspace.created_at.desc(), Workspace.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_workspace(db: AsyncSession, workspace_id: str, *, include_deleted: bool = False) -> Workspace:
    """Get a workspace by id.  Raises ``WorkspaceNotFoundError`` if missing."""
    ws = await db.get(Workspace, workspace_id, populate_existing=True)
    if ws is None or (ws.deleted_at is not None and not include_deleted):
        raise WorkspaceNotFoundError(workspace_id)
    return ws


async def authorize(
    db: AsyncSession,
    acl: AccessControl,
    user_id: str,
    workspace_id: str,
    *,
    write: bool = False,
) -> Workspace:
    """Load a live workspace the user may read (and, if *write*, modify).

    Users without read access get ``WorkspaceNotFoundError`` so that the
    existence of the workspace is not disclosed.
    """
    ws = await get_workspace(db, workspace_id)
    is_owner = ws.owner_id == user_id
    if not (is_owner or acl.can_read(user_id, ws.id)):
        raise WorkspaceNotFoundError(workspace_id)
    if write and not (is_owner or acl.can_write(user_id, ws.id)):
        msg = "You do not have write access to this workspace"
        raise ForbiddenError(msg)
    return ws


# -- Requests ------------------------------------------------------------------


def _validate_create(body: WorkspaceCreate, package_manager: str) -> str | None:
    """Return the path to store for the new workspace."""
    if package_manager not in pkgmgr.available():
        msg = f"Unsupported package manager: {package_manager!r} (available: {', '.join(pkgmgr.available())})"
        raise ValidationError(msg)
    if body.pixi_toml is not None and package_manager != "pixi":
        msg = "pixi_toml can only be used with the pixi package manager"
        raise ValidationError(msg)

    if body.source == WorkspaceSource.LOCAL:
        if not body.path or not PurePosixPath(body.path).is_absolute():
            msg = "Local workspaces require an absolute path"
            raise ValidationError(msg)
        return body.path
    return None


def _new_job(ws: Workspace, job_type: JobType, metadata: dict[str, Any]) -> Job:
    return Job(workspace_id=ws.id, type=str(job_type), status=str(JobStatus.PENDING), metadata_=metadata, logs="")


async def _commit_job(db: AsyncSession, job: Job) -> Job:
    await db.commit()
    await db.refresh(job)
    return job


async def create_workspace(
    db: AsyncSession,
    owner_id: str,
    body: WorkspaceCreate,
    *,
    default_package_manager: str = "pixi",
    acl: AccessControl | None = None,
) -> tuple[Workspace, Job]:
    """Register a workspace with its owner grant and ``create`` job.

    Raises ``ValidationError`` for bad input and ``DuplicateWorkspaceError``
    when the owner already has a live workspace with the same name.
    """
    package_manager = body.package_manager or default_package_manager
    path = _validate_create(body, package_manager)

    clash = await db.scalar(
        select(Workspace.id).where(
            Workspace.owner_id == owner_id,
            Workspace.name == body.name,
            Workspace.deleted_at.is_(None),
        )
    )
    if clash is not None:
        raise DuplicateWorkspaceError(body.name)

    ws = Workspace(
        name=body.name,
        owner_id=owner_id,
        source=str(body.source),
        path=path,
        package_manager=package_manager,
        status=str(WorkspaceStatus.PENDING),
        size_bytes=0,
        next_version=0,
    )
    db.add(ws)
    await db.flush()

    db.add(Permission(user_id=owner_id, workspace_id=ws.id, role=str(RoleName.OWNER)))
    metadata: dict[str, Any] = {"user_id": owner_id}
    if body.pixi_toml:
        metadata["pixi_toml"] = body.pixi_toml
    job = _new_job(ws, JobType.CREATE, metadata)
    db.add(job)
    audit.record(
        db,
        user_id=owner_id,
        action=AuditAction.CREATE_WORKSPACE,
        resource=audit.workspace_resource(ws.id),
        details={"name": ws.name, "package_manager": package_manager, "source": ws.source},
    )

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise DuplicateWorkspaceError(body.name) from None

    await db.refresh(ws)
    await db.refresh(job)
    if acl is not None:
        acl.grant(owner_id, ws.id, RoleName.OWNER)
    logger.info("Workspace registered: {} ({}, {}, {})", ws.name, ws.id, ws.source, package_manager)
    return ws, job


def _require_status(ws: Workspace, allowed: frozenset[str]) -> None:
    if ws.status not in allowed:
        raise WorkspaceNotReadyError(ws.id, ws.status)


async def request_install(db: AsyncSession, ws: Workspace, packages: Sequence[str], user_id: str) -> Job:
    _require_status(ws, frozenset({WorkspaceStatus.READY}))
    job = _new_job(ws, JobType.INSTALL, {"packages": list(packages), "user_id": user_id})
    db.add(job)
    audit.record(
        db,
        user_id=user_id,
        action=AuditAction.INSTALL_PACKAGE,
        resource=audit.workspace_resource(ws.id),
        details={"packages": list(packages)},
    )
    return await _commit_job(db, job)


async def request_remove(db: AsyncSession, ws: Workspace, package_name: str, user_id: str) -> Job:
    package_name = package_name.strip()
    if not package_name:
        msg = "package name must not be blank"
        raise ValidationError(msg)
    _require_status(ws, frozenset({WorkspaceStatus.READY}))
    job = _new_job(ws, JobType.REMOVE, {"packages": [package_name], "user_id": user_id})
    db.add(job)
    audit.record(
        db,
        user_id=user_id,
        action=AuditAction.REMOVE_PACKAGE,
        resource=audit.workspace_resource(ws.id),
        details={"packages": [package_name]},
    )
    return await _commit_job(db, job)


async def request_rollback(db: AsyncSession, ws: Workspace, version_id: str, version_number: int, user_id: str) -> Job:
    _require_status(ws, frozenset({WorkspaceStatus.READY}))
    job = _new_job(
        ws,
        JobType.ROLLBACK,
        {"version_id": version_id, "version_number": version_number, "user_id": user_id},
    )
    db.add(job)
    audit.record(
        db,
        user_id=user_id,
        action=AuditAction.ROLLBACK_WORKSPACE,
        resource=audit.workspace_resource(ws.id),
        details={"version_id": version_id, "version_number": version_number},
    )
    return await _commit_job(db, job)


async def request_delete(db: AsyncSession, ws: Workspace, user_id: str) -> Job:
    _require_status(ws, _DELETABLE)
    job = _new_job(ws, JobType.DELETE, {"user_id": user_id})
    db.add(job)
    audit.record(
        db,
        user_id=user_id,
        action=AuditAction.DELETE_WORKSPACE,
        resource=audit.workspace_resource(ws.id),
        details={"name": ws.name, "source": ws.source},
    )
    return await _commit_job(db, job)


# -- Worker-side state ---------------------------------------------------------


async def set_status(db: AsyncSession, workspace_id: str, status: WorkspaceStatus) -> None:
    """Set the status of a live workspace (no-op once it is deleted)."""
    await db.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.deleted_at.is_(None))
        .values(status=str(status), updated_at=func.now())
    )
    await db.commit()


async def mark_ready(db: AsyncSession, workspace_id: str, *, path: str | None = None, size_bytes: int) -> None:
    values: dict[str, Any] = {"status": str(WorkspaceStatus.READY), "size_bytes": size_bytes, "updated_at": func.now()}
    if path is not None:
        values["path"] = path
    await db.execute(
        update(Workspace).where(Workspace.id == workspace_id, Workspace.deleted_at.is_(None)).values(**values)
    )
    await db.commit()


async def set_size(db: AsyncSession, workspace_id: str, size_bytes: int) -> None:
    await db.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.deleted_at.is_(None))
        .values(size_bytes=size_bytes, updated_at=func.now())
    )
    await db.commit()


async def soft_delete(db: AsyncSession, workspace_id: str, *, acl: AccessControl | None = None) -> None:
    """Mark the workspace deleted.  Its rows stay readable for history."""
    await db.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.deleted_at.is_(None))
        .values(deleted_at=func.now(), updated_at=func.now())
    )
    await db.commit()
    if acl is not None:
        acl.forget_workspace(workspace_id)


async def fail_stuck_workspaces(db: AsyncSession) -> int:
    """Mark workspaces left ``creating`` or ``deleting`` by a crash as ``failed``.

    A workspace with a ``running`` job belongs to a live instance and is left alone.
    """
    active = exists().where(Job.workspace_id == Workspace.id, Job.status == JobStatus.RUNNING)
    result = await db.execute(
        update(Workspace)
        .where(
            Workspace.status.in_([WorkspaceStatus.CREATING, WorkspaceStatus.DELETING]),
            Workspace.deleted_at.is_(None),
            ~active,
        )
        .values(status=str(WorkspaceStatus.FAILED), updated_at=func.now())
    )
    await db.commit()
    return result.rowcount or 0


# -- Stats -----------------------------------------------------------------------


async def dashboard_stats(db: AsyncSession) -> DashboardStats:
    live = Workspace.deleted_at.is_(None)
    total = await db.scalar(select(func.count()).select_from(Workspace).where(live))
    disk = await db.scalar(select(func.coalesce(func.sum(Workspace.size_bytes), 0)).where(live))
    running = await db.scalar(select(func.count()).select_from(Job).where(Job.status == JobStatus.RUNNING))
    return DashboardStats(total_workspaces=total or 0, running_jobs=running or 0, total_disk_bytes=int(disk or 0))
