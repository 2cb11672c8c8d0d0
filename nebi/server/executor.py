"""Workspace executor: maps workspaces to directories and drives adapters.

Managed workspaces live under the storage root::

    {workspaces_dir}/{slug(name)}-{id}/pixi.toml
    {workspaces_dir}/{slug(name)}-{id}/pixi.lock

Local workspaces use the user-supplied path verbatim.  The service never
removes a local directory; deleting a local workspace only deregisters it.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from functools import partial
from pathlib import Path
from typing import Protocol

from anyio import to_thread
from loguru import logger

from nebi.server import pkgmgr
from nebi.server.fsutil import atomic_write, dir_size, read_text_or_empty, rmtree
from nebi.server.models.enums import WorkspaceSource
from nebi.server.pkgmgr import LogWriter, PackageInfo, PackageManager

SLUG_MAX_LENGTH = 50
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


class WorkspaceLike(Protocol):
    id: str
    name: str
    source: str
    path: str | None
    package_manager: str


def normalize_name(name: str) -> str:
    """Slugify a workspace name for use in a directory name.

    Lowercase, collapse runs of non-alphanumerics to ``-``, trim ``-`` and
    truncate to 50 characters.
    """
    slug = _NON_ALNUM.sub("-", name.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


async def _emit(writer: LogWriter | None, line: str) -> None:
    if writer is not None:
        await writer.write(line + "\n")


class WorkspaceExecutor:
    """Runs package-manager operations against workspace directories."""

    def __init__(
        self,
        workspaces_dir: str | Path,
        *,
        manager_factory: Callable[..., PackageManager] = pkgmgr.create,
        manager_options: dict[str, dict[str, object]] | None = None,
    ) -> None:
        self.workspaces_dir = Path(workspaces_dir).resolve()
        self._factory = manager_factory
        self._options = manager_options or {}
        self._managers: dict[str, PackageManager] = {}

    # -- Paths -----------------------------------------------------------------

    def managed_path(self, ws: WorkspaceLike) -> Path:
        slug = normalize_name(ws.name) or "workspace"
        return self.workspaces_dir / f"{slug}-{ws.id}"

    def workspace_path(self, ws: WorkspaceLike) -> Path:
        if ws.source == WorkspaceSource.LOCAL and ws.path:
            return Path(ws.path)
        return self.managed_path(ws)

    def manager(self, ws: WorkspaceLike) -> PackageManager:
        tag = ws.package_manager
        if tag not in self._managers:
            self._managers[tag] = self._factory(tag, **self._options.get(tag, {}))
        return self._managers[tag]

    # -- Mutations -------------------------------------------------------------

    async def create_workspace(
        self,
        ws: WorkspaceLike,
        writer: LogWriter | None = None,
        manifest: str | None = None,
    ) -> Path:
        """Create the workspace directory and initialise the project.

        With a verbatim *manifest* the file is written and installed from.
        A local workspace that already holds a manifest is installed as-is.
        Otherwise the adapter's ``init`` runs with its default channels.
        """
        mgr = self.manager(ws)
        path = self.workspace_path(ws)
        manifest_path = path / mgr.manifest_filename

        await _emit(writer, f"Creating environment at {path}")
        await _emit(writer, f"Using package manager: {mgr.name}")
        await to_thread.run_sync(partial(path.mkdir, parents=True, exist_ok=True))

        if manifest:
            await _emit(writer, f"Writing {mgr.manifest_filename}")
            await to_thread.run_sync(partial(atomic_write, manifest_path, manifest))
            await mgr.install_from_manifest(path, writer=writer)
        elif ws.source == WorkspaceSource.LOCAL and await to_thread.run_sync(manifest_path.is_file):
            await _emit(writer, f"Found existing {mgr.manifest_filename}, installing")
            await mgr.install_from_manifest(path, writer=writer)
        else:
            await mgr.init(path, name=ws.name, channels=mgr.default_channels, writer=writer)

        logger.info("Workspace {} created at {}", ws.id, path)
        return path

    async def install_packages(self, ws: WorkspaceLike, packages: Sequence[str], writer: LogWriter | None = None) -> None:
        await _emit(writer, f"Installing packages: {', '.join(packages)}")
        await self.manager(ws).install(self.workspace_path(ws), packages, writer=writer)

    async def remove_packages(self, ws: WorkspaceLike, packages: Sequence[str], writer: LogWriter | None = None) -> None:
        await _emit(writer, f"Removing packages: {', '.join(packages)}")
        await self.manager(ws).remove(self.workspace_path(ws), packages, writer=writer)

    async def restore_files(self, ws: WorkspaceLike, manifest: str, lock: str) -> None:
        """Overwrite the manifest and lock file with verbatim content.

        An empty *lock* removes any existing lock file so the adapter
        resolves from the manifest.
        """
        mgr = self.manager(ws)
        path = self.workspace_path(ws)
        await to_thread.run_sync(partial(atomic_write, path / mgr.manifest_filename, manifest))
        lock_path = path / mgr.lock_filename
        if lock:
            await to_thread.run_sync(partial(atomic_write, lock_path, lock))
        else:
            await to_thread.run_sync(partial(lock_path.unlink, missing_ok=True))

    async def install_from_manifest(self, ws: WorkspaceLike, writer: LogWriter | None = None) -> None:
        await self.manager(ws).install_from_manifest(self.workspace_path(ws), writer=writer)

    async def delete_workspace(self, ws: WorkspaceLike, writer: LogWriter | None = None) -> None:
        """Remove a managed workspace directory; never touch a local one."""
        path = self.workspace_path(ws)
        if ws.source == WorkspaceSource.LOCAL:
            await _emit(writer, f"Local workspace: leaving {path} untouched")
            logger.info("Workspace {} is local; skipped removal of {}", ws.id, path)
            return

        await _emit(writer, f"Removing {path}")
        removed = await to_thread.run_sync(partial(rmtree, path))
        if not removed:
            await _emit(writer, "Directory already absent")
        logger.info("Workspace {} directory removed ({})", ws.id, path)

    # -- Queries ---------------------------------------------------------------

    async def list_packages(self, ws: WorkspaceLike) -> list[PackageInfo]:
        return await self.manager(ws).list(self.workspace_path(ws))

    async def read_project_files(self, ws: WorkspaceLike) -> tuple[str, str]:
        """Return ``(manifest, lock)`` text; missing files read as ``""``."""
        mgr = self.manager(ws)
        path = self.workspace_path(ws)
        manifest = await to_thread.run_sync(partial(read_text_or_empty, path / mgr.manifest_filename))
        lock = await to_thread.run_sync(partial(read_text_or_empty, path / mgr.lock_filename))
        return manifest, lock

    async def workspace_size(self, ws: WorkspaceLike) -> int:
        return await to_thread.run_sync(partial(dir_size, self.workspace_path(ws)))
