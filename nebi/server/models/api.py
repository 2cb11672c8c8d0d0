"""API request / response schemas.

These thin schemas sit between HTTP and the ORM layer:

- **Request** schemas validate user input and provide defaults.
- **Response** schemas serialize ORM rows via ``from_attributes``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from nebi.server.fsutil import format_bytes
from nebi.server.models.enums import JobStatus, JobType, RoleName, WorkspaceSource, WorkspaceStatus

# ---------------------------------------------------------------------------
# Auth & users
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    is_admin: bool
    created_at: datetime


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


class UserCreate(BaseModel):
    """Admin input for creating a local user."""

    username: str = Field(min_length=1, max_length=255)
    email: str = ""
    password: str = Field(min_length=1)
    is_admin: bool = False


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceCreate(BaseModel):
    """Input for registering a new workspace.

    ``pixi_toml`` is an optional verbatim manifest used instead of a fresh
    ``init``.  ``path`` is required (and must be absolute) for ``local``
    sources and ignored for ``managed`` ones.
    """

    name: str = Field(min_length=1, max_length=255)
    package_manager: str | None = None
    pixi_toml: str | None = None
    source: WorkspaceSource = WorkspaceSource.MANAGED
    path: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "name must not be blank"
            raise ValueError(msg)
        return value


class WorkspaceResponse(BaseModel):
    """Serialized workspace returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    owner_id: str
    source: WorkspaceSource
    path: str | None = None
    package_manager: str
    status: WorkspaceStatus
    size_bytes: int
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def size_formatted(self) -> str:
        return format_bytes(self.size_bytes)


class WorkspaceCreatedResponse(WorkspaceResponse):
    """Workspace plus the id of the ``create`` job that will materialize it."""

    job_id: str


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    """Serialized job including its accumulated logs.

    The ORM attribute is ``metadata_``, read through ``validation_alias``.
    """

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    workspace_id: str
    type: JobType
    status: JobStatus
    metadata: dict = Field(default_factory=dict, validation_alias="metadata_")
    logs: str = ""
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


class PackageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    version: str
    installed_at: datetime


class InstallPackagesRequest(BaseModel):
    packages: list[str] = Field(min_length=1)

    @field_validator("packages")
    @classmethod
    def _non_blank(cls, value: list[str]) -> list[str]:
        cleaned = [p.strip() for p in value]
        if any(not p for p in cleaned):
            msg = "package names must not be blank"
            raise ValueError(msg)
        return cleaned


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


class VersionSummary(BaseModel):
    """Version row without the (potentially large) file contents."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    version_number: int
    job_id: str | None = None
    created_by: str | None = None
    description: str
    created_at: datetime


class VersionDetail(VersionSummary):
    manifest_content: str
    lock_file_content: str
    package_metadata: list[dict]


class RollbackRequest(BaseModel):
    """Target version, by id or by per-workspace number."""

    version_id: str | None = None
    version_number: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_target(self) -> RollbackRequest:
        if self.version_id is None and self.version_number is None:
            msg = "version_id or version_number is required"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Sharing & permissions
# ---------------------------------------------------------------------------


class ShareRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: RoleName


class CollaboratorResponse(BaseModel):
    user_id: str
    username: str
    email: str
    role: RoleName
    is_owner: bool


class PermissionCreate(BaseModel):
    user_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    role: RoleName


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    workspace_id: str
    role: RoleName
    created_at: datetime


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    description: str


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str | None = None
    action: str
    resource: str
    details: dict
    created_at: datetime


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


class DashboardStats(BaseModel):
    total_workspaces: int
    running_jobs: int
    total_disk_bytes: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_disk_formatted(self) -> str:
        return format_bytes(self.total_disk_bytes)


class VersionInfo(BaseModel):
    version: str
    python_version: str
    os: str
    arch: str
    package_managers: list[str]
    features: dict[str, bool]
