"""Shared enumerations used across the server."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    PENDING = "pending"
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


class WorkspaceSource(StrEnum):
    """Who owns the workspace directory.

    ``managed`` directories live under the storage root and are removed on
    delete.  ``local`` directories belong to the user and are never touched
    by destructive operations.
    """

    MANAGED = "managed"
    LOCAL = "local"


# -- Job ---------------------------------------------------------------------


class JobType(StrEnum):
    CREATE = "create"
    INSTALL = "install"
    REMOVE = "remove"
    DELETE = "delete"
    ROLLBACK = "rollback"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# -- Access control ----------------------------------------------------------


class RoleName(StrEnum):
    ADMIN = "admin"
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


ROLE_DESCRIPTIONS: dict[RoleName, str] = {
    RoleName.ADMIN: "Full system access",
    RoleName.OWNER: "Workspace owner with full control",
    RoleName.EDITOR: "Can modify workspace packages",
    RoleName.VIEWER: "Read-only access to workspace",
}

SHAREABLE_ROLES = (RoleName.EDITOR, RoleName.VIEWER)


class AuditAction(StrEnum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    CREATE_USER = "create_user"
    DELETE_USER = "delete_user"
    MAKE_ADMIN = "make_admin"
    REVOKE_ADMIN = "revoke_admin"
    GRANT_PERMISSION = "grant_permission"
    REVOKE_PERMISSION = "revoke_permission"
    CREATE_WORKSPACE = "create_workspace"
    DELETE_WORKSPACE = "delete_workspace"
    INSTALL_PACKAGE = "install_package"
    REMOVE_PACKAGE = "remove_package"
    ROLLBACK_WORKSPACE = "rollback_workspace"
