"""Immutable workspace snapshots.

Version numbers are per workspace and gap-free.  They are allocated from the
``workspaces.next_version`` counter with ``UPDATE ... RETURNING``, which
holds the workspace row lock until the snapshot commits, so concurrent
snapshots of one workspace serialize and never collide.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import defer

from nebi.server.db.tables import Workspace, WorkspaceVersion
from nebi.server.managers.errors import NotFoundError


class VersionNotFoundError(NotFoundError):
    """Raised when a version does not exist for the workspace."""

    resource = "Version"


async def list_versions(db: AsyncSession, workspace_id: str) -> list[WorkspaceVersion]:
    """Versions newest first, without loading file contents."""
    stmt = (
        select(WorkspaceVersion)
        .options(
            defer(WorkspaceVersion.manifest_content),
            defer(WorkspaceVersion.lock_file_content),
            defer(WorkspaceVersion.package_metadata),
        )
        .where(WorkspaceVersion.workspace_id == workspace_id)
        .order_by(WorkspaceVersion.version_number.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_version(db: AsyncSession, workspace_id: str, version_id: str) -> WorkspaceVersion:
    """Get a version by id, scoped to *workspace_id*."""
    version = await db.get(WorkspaceVersion, version_id)
    if version is None or version.workspace_id != workspace_id:
        raise VersionNotFoundError(version_id)
    return version


async def get_version_by_number(db: AsyncSession, workspace_id: str, version_number: int) -> WorkspaceVersion:
    version = await db.scalar(
        select(WorkspaceVersion).where(
            WorkspaceVersion.workspace_id == workspace_id,
            WorkspaceVersion.version_number == version_number,
        )
    )
    if version is None:
        raise VersionNotFoundError(f"{workspace_id}#{version_number}")
    return version


async def create_version(
    db: AsyncSession,
    workspace_id: str,
    *,
    manifest_content: str,
    lock_file_content: str,
    package_metadata: list[dict[str, Any]],
    job_id: str | None,
    created_by: str | None,
    description: str,
) -> WorkspaceVersion:
    """Append a snapshot with the next version number."""
    number = await db.scalar(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(next_version=Workspace.next_version + 1)
        .returning(Workspace.next_version)
    )
    if number is None:
        await db.rollback()
        msg = f"workspace {workspace_id} not found"
        raise VersionNotFoundError(msg)

    version = WorkspaceVersion(
        workspace_id=workspace_id,
        version_number=number,
        manifest_content=manifest_content,
        lock_file_content=lock_file_content,
        package_metadata=package_metadata,
        job_id=job_id,
        created_by=created_by,
        description=description,
        created_at=func.clock_timestamp(),
    )
    db.add(version)
    await db.commit()
    await db.refresh(version)
    logger.info("Workspace {} snapshot v{}: {}", workspace_id, number, description)
    return version
