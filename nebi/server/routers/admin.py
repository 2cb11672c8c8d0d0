"""Administrative endpoints: users, roles, direct grants, audit log, dashboard.

Every route requires the caller to hold the admin policy.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, status

from nebi.server.auth import audit
from nebi.server.db.tables import AuditLog, Permission, Role, User
from nebi.server.deps import Acl, AdminUser, DbSession
from nebi.server.managers import permissions as permissions_mgr
from nebi.server.managers import users as users_mgr
from nebi.server.managers import workspaces as workspaces_mgr
from nebi.server.models.api import (
    AuditLogResponse,
    DashboardStats,
    PermissionCreate,
    PermissionResponse,
    RoleResponse,
    UserCreate,
    UserResponse,
)
from nebi.server.routers.errors import http_errors

router = APIRouter(prefix="/admin", tags=["admin"])


# -- Users ---------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
async def list_users(db: DbSession, _admin: AdminUser) -> list[User]:
    return await users_mgr.list_users(db)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(body: UserCreate, db: DbSession, admin: AdminUser, acl: Acl) -> User:
    with http_errors():
        return await users_mgr.create_user(
            db,
            username=body.username,
            password=body.password,
            email=body.email,
            is_admin=body.is_admin,
            actor_id=admin.id,
            acl=acl,
        )


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, db: DbSession, _admin: AdminUser) -> User:
    with http_errors():
        return await users_mgr.get_user(db, user_id)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: str, db: DbSession, admin: AdminUser, acl: Acl) -> None:
    """Delete a user.  Refused (409) while they own live workspaces."""
    with http_errors():
        await users_mgr.delete_user(db, user_id, actor_id=admin.id, acl=acl)


@router.post("/users/{user_id}/toggle-admin", response_model=UserResponse)
async def toggle_admin(user_id: str, db: DbSession, admin: AdminUser, acl: Acl) -> User:
    with http_errors():
        return await users_mgr.toggle_admin(db, user_id, actor_id=admin.id, acl=acl)


# -- Roles & permissions -------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
async def list_roles(db: DbSession, _admin: AdminUser) -> list[Role]:
    return await permissions_mgr.list_roles(db)


@router.get("/permissions", response_model=list[PermissionResponse])
async def list_permissions(
    db: DbSession,
    _admin: AdminUser,
    workspace_id: str | None = Query(None, description="Only grants on this workspace."),
) -> list[Permission]:
    return await permissions_mgr.list_permissions(db, workspace_id=workspace_id)


@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def grant_permission(body: PermissionCreate, db: DbSession, admin: AdminUser, acl: Acl) -> Permission:
    with http_errors():
        return await permissions_mgr.grant_permission(db, acl, body, actor_id=admin.id)


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_permission(permission_id: str, db: DbSession, admin: AdminUser, acl: Acl) -> None:
    with http_errors():
        await permissions_mgr.revoke_permission(db, acl, permission_id, actor_id=admin.id)


# -- Audit & stats -------------------------------------------------------------


@router.get("/audit-logs", response_model=list[AuditLogResponse])
async def list_audit_logs(
    db: DbSession,
    _admin: AdminUser,
    user_id: str | None = Query(None, description="Only entries by this actor."),
    action: str | None = Query(None, description="Only entries with this action (e.g. 'login')."),
    limit: int = Query(audit.DEFAULT_LIST_LIMIT, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> list[AuditLog]:
    """Audit entries, newest first."""
    return await audit.list_entries(db, user_id=user_id, action=action, limit=limit, offset=offset)


@router.get("/dashboard", response_model=DashboardStats)
async def dashboard(db: DbSession, _admin: AdminUser) -> DashboardStats:
    return await workspaces_mgr.dashboard_stats(db)
