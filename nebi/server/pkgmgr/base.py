"""Package-manager adapter interface, errors and registry.

An adapter wraps one external tool (pixi, uv, ...) behind a common
capability set.  The executor picks an adapter per workspace from the
workspace's ``package_manager`` tag through :func:`create`.

Adapters stream tool output line by line to an optional :class:`LogWriter`
and raise one of the :class:`PackageManagerError` subclasses on failure.
"""

from __future__ import annotations

import abc
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Protocol, runtime_checkable

from loguru import logger

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PackageManagerError(Exception):
    """Base class for adapter failures."""


class InvalidArgsError(PackageManagerError, ValueError):
    """Missing path or name, or an empty package list."""


class ToolMissingError(PackageManagerError):
    """The external binary is not available and could not be installed."""


class ToolFailureError(PackageManagerError):
    """The external tool exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr_tail: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        msg = f"{command} failed with exit code {exit_code}"
        if stderr_tail:
            msg = f"{msg}: {stderr_tail}"
        super().__init__(msg)


class ManifestParseError(PackageManagerError):
    """The manifest (or the tool's list output) could not be parsed."""


class UnsupportedPackageManagerError(PackageManagerError, LookupError):
    """No adapter is registered for the requested tag."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@runtime_checkable
class LogWriter(Protocol):
    """Line-oriented sink for live tool output."""

    async def write(self, data: str) -> None: ...


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version}


@dataclass
class Manifest:
    """Parsed project manifest."""

    name: str
    channels: list[str] = field(default_factory=list)
    dependencies: dict[str, str] = field(default_factory=dict)
    raw: str = ""


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class PackageManager(abc.ABC):
    """Capability set every adapter implements.

    ``path`` is always the workspace directory.  ``writer`` receives tool
    output as it is produced; ``None`` discards it.
    """

    name: ClassVar[str]
    manifest_filename: ClassVar[str]
    lock_filename: ClassVar[str]
    default_channels: ClassVar[tuple[str, ...]] = ()

    @abc.abstractmethod
    async def init(
        self,
        path: Path,
        *,
        name: str,
        channels: Sequence[str] = (),
        writer: LogWriter | None = None,
    ) -> None:
        """Create a new project in *path* (created if missing)."""

    @abc.abstractmethod
    async def install(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        """Add *packages* to the manifest and install them."""

    @abc.abstractmethod
    async def install_from_manifest(self, path: Path, *, writer: LogWriter | None = None) -> None:
        """Materialize the environment described by the manifest/lock on disk."""

    @abc.abstractmethod
    async def remove(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        """Remove *packages* from the manifest and the environment."""

    @abc.abstractmethod
    async def update(
        self,
        path: Path,
        packages: Sequence[str] = (),
        *,
        writer: LogWriter | None = None,
    ) -> None:
        """Update *packages* (all when empty) within manifest constraints."""

    @abc.abstractmethod
    async def list(self, path: Path) -> list[PackageInfo]:
        """Return the workspace's packages, sorted by name."""

    @abc.abstractmethod
    async def get_manifest(self, path: Path) -> Manifest:
        """Parse the workspace manifest."""


# -- Validation helpers ------------------------------------------------------


def require_path(path: Path | str | None) -> Path:
    if path is None or str(path) == "":
        msg = "environment path is required"
        raise InvalidArgsError(msg)
    return Path(path)


def require_name(name: str | None) -> str:
    if not name or not name.strip():
        msg = "environment name is required"
        raise InvalidArgsError(msg)
    return name


def require_packages(packages: Sequence[str] | None) -> list[str]:
    cleaned = [p.strip() for p in packages or () if p and p.strip()]
    if not cleaned:
        msg = "at least one package is required"
        raise InvalidArgsError(msg)
    return cleaned


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PackageManagerFactory = Callable[..., PackageManager]

_registry: dict[str, PackageManagerFactory] = {}


def register(name: str, factory: PackageManagerFactory) -> None:
    """Register *factory* under the ``package_manager`` tag *name*."""
    if name in _registry:
        logger.debug("Package manager {!r} re-registered", name)
    _registry[name] = factory


def create(name: str, **options: object) -> PackageManager:
    """Instantiate the adapter registered for *name*."""
    factory = _registry.get(name)
    if factory is None:
        msg = f"unsupported package manager: {name!r} (available: {', '.join(available()) or 'none'})"
        raise UnsupportedPackageManagerError(msg)
    return factory(**options)


def available() -> list[str]:
    return sorted(_registry)
