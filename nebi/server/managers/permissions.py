"""Workspace sharing, direct permission grants and role listing.

Every change is committed together with its audit entry and then mirrored
into the in-memory enforcer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.auth import audit
from nebi.server.db.tables import Permission, Role, User, Workspace
from nebi.server.managers.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from nebi.server.managers.users import get_user
from nebi.server.managers.workspaces import get_workspace
from nebi.server.models.api import CollaboratorResponse, PermissionCreate
from nebi.server.models.enums import ROLE_DESCRIPTIONS, SHAREABLE_ROLES, AuditAction, RoleName

if TYPE_CHECKING:
    from nebi.server.auth.rbac import AccessControl


class PermissionNotFoundError(NotFoundError):
    """Raised when a permission row does not exist."""

    resource = "Permission"


class DuplicatePermissionError(ConflictError):
    """Raised when the user already holds a permission on the workspace."""


_GRANTABLE_ROLES = (RoleName.OWNER, *SHAREABLE_ROLES)


# -- Owner sharing -------------------------------------------------------------


def _require_owner(ws: Workspace, actor_id: str) -> None:
    if ws.owner_id != actor_id:
        msg = "Only the workspace owner can manage sharing"
        raise ForbiddenError(msg)


async def share_workspace(
    db: AsyncSession,
    acl: AccessControl,
    ws: Workspace,
    *,
    actor_id: str,
    user_id: str,
    role: RoleName,
) -> Permission:
    """Grant (or change) a collaborator's role on an owned workspace."""
    _require_owner(ws, actor_id)
    if role not in SHAREABLE_ROLES:
        msg = f"Role must be one of: {', '.join(SHAREABLE_ROLES)}"
        raise ValidationError(msg)
    if user_id == ws.owner_id:
        msg = "The owner already has full access"
        raise ValidationError(msg)
    await get_user(db, user_id)

    stmt = (
        pg_insert(Permission)
        .values(user_id=user_id, workspace_id=ws.id, role=str(role))
        .on_conflict_do_update(constraint="uq_permissions_user_id_workspace_id", set_={"role": str(role)})
        .returning(Permission.id)
    )
    permission_id = await db.scalar(stmt)
    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.GRANT_PERMISSION,
        resource=audit.workspace_resource(ws.id),
        details={"target_user_id": user_id, "role": str(role), "permission_id": permission_id},
    )
    await db.commit()

    acl.grant(user_id, ws.id, role)
    logger.info("Workspace {} shared with {} as {}", ws.id, user_id, role)
    return await _get_permission(db, permission_id)


async def unshare_workspace(
    db: AsyncSession,
    acl: AccessControl,
    ws: Workspace,
    *,
    actor_id: str,
    user_id: str,
) -> None:
    _require_owner(ws, actor_id)
    if user_id == ws.owner_id:
        msg = "Cannot remove the workspace owner"
        raise ValidationError(msg)

    permission = await db.scalar(
        select(Permission).where(Permission.workspace_id == ws.id, Permission.user_id == user_id)
    )
    if permission is None:
        raise PermissionNotFoundError(f"{user_id} on {ws.id}")

    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.REVOKE_PERMISSION,
        resource=audit.workspace_resource(ws.id),
        details={"target_user_id": user_id, "role": permission.role, "permission_id": permission.id},
    )
    await db.delete(permission)
    await db.commit()

    acl.revoke(user_id, ws.id)
    logger.info("Workspace {} unshared from {}", ws.id, user_id)


async def list_collaborators(db: AsyncSession, ws: Workspace) -> list[CollaboratorResponse]:
    """Owner first, then other grants by username."""
    rows = await db.execute(
        select(User.id, User.username, User.email, Permission.role)
        .join(Permission, Permission.user_id == User.id)
        .where(Permission.workspace_id == ws.id)
        .order_by(User.username)
    )
    collaborators = [
        CollaboratorResponse(
            user_id=user_id,
            username=username,
            email=email,
            role=RoleName(role),
            is_owner=user_id == ws.owner_id,
        )
        for user_id, username, email, role in rows
    ]
    collaborators.sort(key=lambda c: not c.is_owner)
    return collaborators


# -- Admin grants --------------------------------------------------------------


async def _get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id, populate_existing=True)
    if permission is None:
        raise PermissionNotFoundError(permission_id)
    return permission


async def list_permissions(db: AsyncSession, *, workspace_id: str | None = None) -> list[Permission]:
    stmt = (
        select(Permission)
        .join(Workspace, Workspace.id == Permission.workspace_id)
        .where(Workspace.deleted_at.is_(None))
        .order_by(Permission.created_at.desc(), Permission.id)
    )
    if workspace_id is not None:
        stmt = stmt.where(Permission.workspace_id == workspace_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def grant_permission(
    db: AsyncSession,
    acl: AccessControl,
    body: PermissionCreate,
    *,
    actor_id: str,
) -> Permission:
    """Create a grant directly.  Raises ``DuplicatePermissionError`` if one exists."""
    if body.role not in _GRANTABLE_ROLES:
        msg = f"Role must be one of: {', '.join(_GRANTABLE_ROLES)}"
        raise ValidationError(msg)
    await get_user(db, body.user_id)
    ws = await get_workspace(db, body.workspace_id)

    permission = Permission(user_id=body.user_id, workspace_id=ws.id, role=str(body.role))
    db.add(permission)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicatePermissionError(f"{body.user_id} on {ws.id}") from None

    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.GRANT_PERMISSION,
        resource=audit.permission_resource(permission.id),
        details={"target_user_id": body.user_id, "workspace_id": ws.id, "role": str(body.role)},
    )
    await db.commit()
    await db.refresh(permission)

    acl.grant(body.user_id, ws.id, body.role)
    return permission


async def revoke_permission(db: AsyncSession, acl: AccessControl, permission_id: str, *, actor_id: str) -> None:
    permission = await _get_permission(db, permission_id)
    ws = await get_workspace(db, permission.workspace_id, include_deleted=True)
    if permission.user_id == ws.owner_id:
        msg = "Cannot revoke the owner's permission"
        raise ValidationError(msg)

    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.REVOKE_PERMISSION,
        resource=audit.permission_resource(permission.id),
        details={"target_user_id": permission.user_id, "workspace_id": permission.workspace_id, "role": permission.role},
    )
    await db.delete(permission)
    await db.commit()

    acl.revoke(permission.user_id, permission.workspace_id)


# -- Roles ---------------------------------------------------------------------


async def list_roles(db: AsyncSession) -> list[Role]:
    result = await db.execute(select(Role).order_by(Role.name))
    return list(result.scalars().all())


async def ensure_roles(db: AsyncSession) -> None:
    """Insert any missing built-in role rows."""
    stmt = pg_insert(Role).values(
        [{"name": str(name), "description": desc} for name, desc in ROLE_DESCRIPTIONS.items()]
    )
    await db.execute(stmt.on_conflict_do_nothing(index_elements=[Role.name]))
    await db.commit()
