"""Service configuration loaded from NEBI_* environment variables."""

from __future__ import annotations

import socket
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "change-me-in-production"  # noqa: S105


class NebiSettings(BaseSettings):
    """Nebi server settings.

    All fields are read from environment variables with the ``NEBI_`` prefix.
    For example, ``NEBI_QUEUE_TYPE=valkey`` maps to ``queue_type``.
    """

    model_config = SettingsConfigDict(
        env_prefix="NEBI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8460
    graceful_shutdown_timeout: int = 3600
    """Seconds to wait for running jobs during shutdown before cancelling them."""

    # -- Database --------------------------------------------------------------
    database_dsn: str | None = None
    """SQLAlchemy async URL (``postgresql+psycopg://...``).  Required for full operation."""

    # -- Storage ---------------------------------------------------------------
    storage_workspaces_dir: str = "./data/workspaces"
    """Root directory for managed workspaces (``{dir}/{slug}-{id}``)."""

    # -- Queue -----------------------------------------------------------------
    queue_type: Literal["memory", "valkey"] = "memory"
    queue_valkey_addr: str = "localhost:6379"
    queue_buffer_size: int = 100
    queue_enqueue_timeout: float = 5.0
    """Seconds an in-memory enqueue may wait for room.  ``<= 0`` waits forever."""

    # -- Worker ----------------------------------------------------------------
    max_workers: int = 10
    log_flush_interval: float = 2.0
    log_channel_ttl: int = 3600
    instance_id: str = Field(default_factory=socket.gethostname)
    """Tag stored on the jobs this process runs.  Must be unique per instance and
    stable across its restarts: startup recovery only fails jobs carrying it."""

    # -- Package managers ------------------------------------------------------
    package_manager_default: str = "pixi"
    pixi_auto_install: bool = True

    # -- Auth ------------------------------------------------------------------
    auth_jwt_secret: SecretStr = SecretStr(DEFAULT_JWT_SECRET)
    auth_token_ttl_hours: int = 24

    admin_username: str = "admin"
    admin_email: str = "admin@nebi.local"
    admin_password: SecretStr | None = None
    """Bootstrap admin password.  The admin user is created at startup when set."""

    # -- Helpers ---------------------------------------------------------------

    def valkey_url(self) -> str:
        """Return ``queue_valkey_addr`` as a redis URL."""
        addr = self.queue_valkey_addr
        if "://" in addr:
            return addr
        return f"redis://{addr}/0"


def get_settings() -> NebiSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> NebiSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return NebiSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
