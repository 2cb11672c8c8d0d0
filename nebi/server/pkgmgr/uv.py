"""uv adapter for PyPI-only workspaces.

The workspace is a ``pyproject.toml`` project locked by ``uv.lock``::

    init     -> uv init --bare --no-workspace --name <name>
    install  -> uv add <pkg> ...
    remove   -> uv remove <pkg> ...
    update   -> uv lock --upgrade[-package <pkg>] ; uv sync
    manifest -> uv sync

uv is not auto-installed; it must be on ``PATH``.
"""

from __future__ import annotations

import re
import shutil
import tomllib
from collections.abc import Sequence
from functools import partial
from pathlib import Path

from anyio import to_thread

from nebi.server.pkgmgr.base import (
    LogWriter,
    Manifest,
    ManifestParseError,
    PackageInfo,
    PackageManager,
    ToolMissingError,
    register,
    require_name,
    require_packages,
    require_path,
)
from nebi.server.pkgmgr.process import run_tool

MANIFEST_FILENAME = "pyproject.toml"
LOCK_FILENAME = "uv.lock"

# PEP 508: name, optional [extras], then the version specifier up to a marker.
_REQUIREMENT = re.compile(r"^\s*(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)\s*(\[[^\]]*\])?\s*(?P<spec>[^;]*)")


class UvPackageManager(PackageManager):
    name = "uv"
    manifest_filename = MANIFEST_FILENAME
    lock_filename = LOCK_FILENAME

    def __init__(self, binary: str | None = None) -> None:
        self._binary = binary

    def binary(self) -> str:
        if self._binary is None:
            found = shutil.which("uv")
            if found is None:
                msg = "uv is not installed (not found on PATH)"
                raise ToolMissingError(msg)
            self._binary = found
        return self._binary

    async def _run(self, path: Path, args: Sequence[str], writer: LogWriter | None) -> None:
        await run_tool(self.binary(), list(args), cwd=path, writer=writer)

    async def init(
        self,
        path: Path,
        *,
        name: str,
        channels: Sequence[str] = (),
        writer: LogWriter | None = None,
    ) -> None:
        path = require_path(path)
        name = require_name(name)
        await to_thread.run_sync(partial(path.mkdir, parents=True, exist_ok=True))
        await self._run(path, ["init", "--bare", "--no-workspace", "--name", name], writer)
        await self._run(path, ["lock"], writer)

    async def install(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        path = require_path(path)
        await self._run(path, ["add", *require_packages(packages)], writer)

    async def install_from_manifest(self, path: Path, *, writer: LogWriter | None = None) -> None:
        path = require_path(path)
        await self._run(path, ["sync"], writer)

    async def remove(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        path = require_path(path)
        await self._run(path, ["remove", *require_packages(packages)], writer)

    async def update(
        self,
        path: Path,
        packages: Sequence[str] = (),
        *,
        writer: LogWriter | None = None,
    ) -> None:
        path = require_path(path)
        args = ["lock"]
        if packages:
            for pkg in packages:
                args += ["--upgrade-package", pkg]
        else:
            args.append("--upgrade")
        await self._run(path, args, writer)
        await self._run(path, ["sync"], writer)

    async def list(self, path: Path) -> list[PackageInfo]:
        manifest = await self._load(require_path(path), require_project_name=False)
        return [PackageInfo(name=n, version=v) for n, v in sorted(manifest.dependencies.items())]

    async def get_manifest(self, path: Path) -> Manifest:
        return await self._load(require_path(path))

    async def _load(self, path: Path, *, require_project_name: bool = True) -> Manifest:
        target = path / MANIFEST_FILENAME
        try:
            content = await to_thread.run_sync(partial(target.read_text, encoding="utf-8"))
        except FileNotFoundError as exc:
            msg = f"failed to read {MANIFEST_FILENAME}: file not found"
            raise ManifestParseError(msg) from exc
        return parse_pyproject(content, require_project_name=require_project_name)


def parse_pyproject(content: str, *, require_project_name: bool = True) -> Manifest:
    """Parse ``pyproject.toml`` into a :class:`Manifest` (channels are always empty)."""
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as exc:
        msg = f"failed to parse pyproject.toml: {exc}"
        raise ManifestParseError(msg) from exc

    project = data.get("project")
    if not isinstance(project, dict):
        project = {}
    name = project.get("name")
    if not isinstance(name, str) or not name.strip():
        if require_project_name:
            msg = "pyproject.toml does not define [project] name"
            raise ManifestParseError(msg)
        name = ""

    raw_deps = project.get("dependencies", [])
    if not isinstance(raw_deps, list):
        msg = "pyproject.toml [project] dependencies must be a list"
        raise ManifestParseError(msg)

    deps: dict[str, str] = {}
    for requirement in raw_deps:
        match = _REQUIREMENT.match(requirement) if isinstance(requirement, str) else None
        if match is None:
            msg = f"invalid dependency specification: {requirement!r}"
            raise ManifestParseError(msg)
        deps[match.group("name")] = match.group("spec").strip() or "*"

    return Manifest(name=name, dependencies=deps, raw=content)


register(UvPackageManager.name, UvPackageManager)
