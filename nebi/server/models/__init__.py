"""Data models for the nebi server."""

from nebi.server.models.api import (
    AuditLogResponse,
    CollaboratorResponse,
    DashboardStats,
    InstallPackagesRequest,
    JobResponse,
    LoginRequest,
    LoginResponse,
    PackageResponse,
    PermissionCreate,
    PermissionResponse,
    RoleResponse,
    RollbackRequest,
    ShareRequest,
    UserCreate,
    UserResponse,
    VersionDetail,
    VersionInfo,
    VersionSummary,
    WorkspaceCreate,
    WorkspaceCreatedResponse,
    WorkspaceResponse,
)
from nebi.server.models.enums import (
    AuditAction,
    JobStatus,
    JobType,
    RoleName,
    WorkspaceSource,
    WorkspaceStatus,
)

__all__ = [
    # Enums
    "AuditAction",
    # API schemas
    "AuditLogResponse",
    "CollaboratorResponse",
    "DashboardStats",
    "InstallPackagesRequest",
    "JobResponse",
    "JobStatus",
    "JobType",
    "LoginRequest",
    "LoginResponse",
    "PackageResponse",
    "PermissionCreate",
    "PermissionResponse",
    "RoleName",
    "RoleResponse",
    "RollbackRequest",
    "ShareRequest",
    "UserCreate",
    "UserResponse",
    "VersionDetail",
    "VersionInfo",
    "VersionSummary",
    "WorkspaceCreate",
    "WorkspaceCreatedResponse",
    "WorkspaceResponse",
    "WorkspaceSource",
    "WorkspaceStatus",
]
