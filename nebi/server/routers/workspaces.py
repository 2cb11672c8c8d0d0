"""Workspace endpoints.

Commands (create, install, remove, rollback, delete) write a ``pending``
job, commit, and only then enqueue it; they answer ``202 Accepted`` with
the job.  Queries read the database directly.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import PlainTextResponse
from loguru import logger

from nebi.server.db.tables import Job, Package, Permission, Workspace, WorkspaceVersion
from nebi.server.deps import Acl, CurrentUser, DbSession, Executor, Queue, Settings
from nebi.server.jobqueue import JobQueue, QueuedJob, QueueError
from nebi.server.managers import packages as packages_mgr
from nebi.server.managers import permissions as permissions_mgr
from nebi.server.managers import versions as versions_mgr
from nebi.server.managers import workspaces as workspaces_mgr
from nebi.server.models.api import (
    CollaboratorResponse,
    InstallPackagesRequest,
    JobResponse,
    PackageResponse,
    PermissionResponse,
    RollbackRequest,
    ShareRequest,
    VersionDetail,
    VersionSummary,
    WorkspaceCreate,
    WorkspaceCreatedResponse,
    WorkspaceResponse,
)
from nebi.server.routers.errors import http_errors

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


async def enqueue_job(queue: JobQueue, job: Job) -> None:
    """Enqueue a committed job.  Raises HTTP 500 if the queue rejects it.

    The job row stays ``pending`` and is re-enqueued by startup recovery.
    """
    try:
        await queue.enqueue(QueuedJob(id=job.id, type=job.type))
    except QueueError as exc:
        logger.error("Failed to enqueue job {} ({}): {}", job.id, job.type, exc)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to queue job") from None


# -- Workspaces ----------------------------------------------------------------


@router.get("", response_model=list[WorkspaceResponse])
async def list_workspaces(db: DbSession, user: CurrentUser) -> list[Workspace]:
    """Workspaces the caller owns or has been granted access to."""
    return await workspaces_mgr.list_workspaces(db, user.id)


@router.post("", response_model=WorkspaceCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_workspace(
    body: WorkspaceCreate,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
    queue: Queue,
    settings: Settings,
) -> WorkspaceCreatedResponse:
    """Register a workspace and queue its ``create`` job."""
    with http_errors():
        ws, job = await workspaces_mgr.create_workspace(
            db,
            user.id,
            body,
            default_package_manager=settings.package_manager_default,
            acl=acl,
        )
    await enqueue_job(queue, job)
    created = WorkspaceResponse.model_validate(ws).model_dump(exclude={"size_formatted"})
    return WorkspaceCreatedResponse(**created, job_id=job.id)


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
async def get_workspace(workspace_id: str, db: DbSession, user: CurrentUser, acl: Acl) -> Workspace:
    with http_errors():
        return await workspaces_mgr.authorize(db, acl, user.id, workspace_id)


@router.delete("/{workspace_id}", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def delete_workspace(workspace_id: str, db: DbSession, user: CurrentUser, acl: Acl, queue: Queue) -> Job:
    """Queue deletion.  Local directories are never removed, only deregistered."""
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id, write=True)
        job = await workspaces_mgr.request_delete(db, ws, user.id)
    await enqueue_job(queue, job)
    return job


@router.get("/{workspace_id}/pixi-toml", response_class=PlainTextResponse)
async def get_manifest(workspace_id: str, db: DbSession, user: CurrentUser, acl: Acl, executor: Executor) -> str:
    """Current manifest as stored on disk."""
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
    manifest, _lock = await executor.read_project_files(ws)
    if not manifest:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Manifest not found.")
    return manifest


# -- Packages ------------------------------------------------------------------


@router.get("/{workspace_id}/packages", response_model=list[PackageResponse])
async def list_packages(workspace_id: str, db: DbSession, user: CurrentUser, acl: Acl) -> list[Package]:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
    return await packages_mgr.list_packages(db, ws.id)


@router.post("/{workspace_id}/packages", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def install_packages(
    workspace_id: str,
    body: InstallPackagesRequest,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
    queue: Queue,
) -> Job:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id, write=True)
        job = await workspaces_mgr.request_install(db, ws, body.packages, user.id)
    await enqueue_job(queue, job)
    return job


@router.delete(
    "/{workspace_id}/packages/{package_name}",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def remove_package(
    workspace_id: str,
    package_name: str,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
    queue: Queue,
) -> Job:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id, write=True)
        job = await workspaces_mgr.request_remove(db, ws, package_name, user.id)
    await enqueue_job(queue, job)
    return job


# -- Versions ------------------------------------------------------------------


@router.get("/{workspace_id}/versions", response_model=list[VersionSummary])
async def list_versions(workspace_id: str, db: DbSession, user: CurrentUser, acl: Acl) -> list[WorkspaceVersion]:
    """Snapshots, newest first, without file contents."""
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
    return await versions_mgr.list_versions(db, ws.id)


async def _version(db: DbSession, user: CurrentUser, acl: Acl, workspace_id: str, number: int) -> WorkspaceVersion:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
        return await versions_mgr.get_version_by_number(db, ws.id, number)


@router.get("/{workspace_id}/versions/{version_number}", response_model=VersionDetail)
async def get_version(
    workspace_id: str,
    version_number: int,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
) -> WorkspaceVersion:
    return await _version(db, user, acl, workspace_id, version_number)


def _attachment(content: str, filename: str) -> Response:
    return PlainTextResponse(content, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.get("/{workspace_id}/versions/{version_number}/pixi-toml", response_class=PlainTextResponse)
async def download_version_manifest(
    workspace_id: str,
    version_number: int,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
) -> Response:
    version = await _version(db, user, acl, workspace_id, version_number)
    return _attachment(version.manifest_content, "pixi.toml")


@router.get("/{workspace_id}/versions/{version_number}/pixi-lock", response_class=PlainTextResponse)
async def download_version_lock(
    workspace_id: str,
    version_number: int,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
) -> Response:
    version = await _version(db, user, acl, workspace_id, version_number)
    return _attachment(version.lock_file_content, "pixi.lock")


@router.post("/{workspace_id}/rollback", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def rollback(
    workspace_id: str,
    body: RollbackRequest,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
    queue: Queue,
) -> Job:
    """Queue a rollback to a version given by id or by number."""
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id, write=True)
        if body.version_id is not None:
            version = await versions_mgr.get_version(db, ws.id, body.version_id)
        else:
            version = await versions_mgr.get_version_by_number(db, ws.id, body.version_number)
        job = await workspaces_mgr.request_rollback(db, ws, version.id, version.version_number, user.id)
    await enqueue_job(queue, job)
    return job


# -- Sharing -------------------------------------------------------------------


@router.post("/{workspace_id}/share", response_model=PermissionResponse)
async def share_workspace(
    workspace_id: str,
    body: ShareRequest,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
) -> Permission:
    """Grant a collaborator ``editor`` or ``viewer`` access (owner only)."""
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
        return await permissions_mgr.share_workspace(
            db, acl, ws, actor_id=user.id, user_id=body.user_id, role=body.role
        )


@router.delete("/{workspace_id}/share/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unshare_workspace(workspace_id: str, user_id: str, db: DbSession, user: CurrentUser, acl: Acl) -> None:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
        await permissions_mgr.unshare_workspace(db, acl, ws, actor_id=user.id, user_id=user_id)


@router.get("/{workspace_id}/collaborators", response_model=list[CollaboratorResponse])
async def list_collaborators(
    workspace_id: str,
    db: DbSession,
    user: CurrentUser,
    acl: Acl,
) -> list[CollaboratorResponse]:
    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
    return await permissions_mgr.list_collaborators(db, ws)
