"""pixi adapter.

Commands run inside the workspace directory::

    init     -> pixi init --channel <c> ...
    install  -> pixi add <pkg> ...
    remove   -> pixi remove <pkg> ...
    update   -> pixi update [<pkg> ...]
    manifest -> pixi install -v   (materialize an existing pixi.toml / pixi.lock)

``list`` and ``get_manifest`` read ``pixi.toml`` directly, which does not
require the environment to be activated or even installed.
"""

from __future__ import annotations

import tomllib
from collections.abc import Sequence
from functools import partial
from pathlib import Path
from typing import Any

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
from nebi.server.pkgmgr.installer import PixiInstaller, get_installer
from nebi.server.pkgmgr.process import run_tool

MANIFEST_FILENAME = "pixi.toml"
LOCK_FILENAME = "pixi.lock"


class PixiPackageManager(PackageManager):
    name = "pixi"
    manifest_filename = MANIFEST_FILENAME
    lock_filename = LOCK_FILENAME
    default_channels = ("conda-forge",)

    def __init__(
        self,
        binary: str | None = None,
        *,
        auto_install: bool = True,
        installer: PixiInstaller | None = None,
    ) -> None:
        self._binary = binary
        self._auto_install = auto_install
        self._installer = installer

    async def binary(self) -> str:
        """Resolve the pixi executable, installing it if allowed."""
        if self._binary is not None:
            return self._binary
        installer = self._installer or get_installer()
        existing = installer.find_existing()
        if existing is not None:
            self._binary = str(existing)
        elif self._auto_install:
            self._binary = str(await installer.ensure())
        else:
            msg = "pixi is not installed and auto-install is disabled"
            raise ToolMissingError(msg)
        return self._binary

    async def _run(self, path: Path, args: Sequence[str], writer: LogWriter | None) -> None:
        await run_tool(await self.binary(), list(args), cwd=path, writer=writer)

    # -- Mutations -------------------------------------------------------------

    async def init(
        self,
        path: Path,
        *,
        name: str,
        channels: Sequence[str] = (),
        writer: LogWriter | None = None,
    ) -> None:
        path = require_path(path)
        require_name(name)
        await to_thread.run_sync(partial(path.mkdir, parents=True, exist_ok=True))
        args = ["init"]
        for channel in channels or self.default_channels:
            args += ["--channel", channel]
        await self._run(path, args, writer)

    async def install(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        path = require_path(path)
        await self._run(path, ["add", *require_packages(packages)], writer)

    async def install_from_manifest(self, path: Path, *, writer: LogWriter | None = None) -> None:
        path = require_path(path)
        await self._run(path, ["install", "-v"], writer)

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
        await self._run(path, ["update", *packages], writer)

    # -- Queries ---------------------------------------------------------------

    async def list(self, path: Path) -> list[PackageInfo]:
        path = require_path(path)
        content = await _read_manifest(path / MANIFEST_FILENAME)
        manifest = parse_manifest(content, require_project_name=False)
        return [PackageInfo(name=n, version=v) for n, v in sorted(manifest.dependencies.items())]

    async def get_manifest(self, path: Path) -> Manifest:
        path = require_path(path)
        content = await _read_manifest(path / MANIFEST_FILENAME)
        return parse_manifest(content)


# ---------------------------------------------------------------------------
# Manifest parsing
# ---------------------------------------------------------------------------


async def _read_manifest(path: Path) -> str:
    try:
        return await to_thread.run_sync(partial(path.read_text, encoding="utf-8"))
    except FileNotFoundError as exc:
        msg = f"failed to read {path.name}: file not found"
        raise ManifestParseError(msg) from exc


def parse_manifest(content: str, *, require_project_name: bool = True) -> Manifest:
    """Parse ``pixi.toml`` text.

    The project name is read from ``[workspace]`` (current pixi) and falls
    back to ``[project]`` (older manifests).  Dependency values may be a
    version string or a table; tables contribute their ``version`` key and
    anything else is reported as ``*``.
    """
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as exc:
        msg = f"failed to parse pixi.toml: {exc}"
        raise ManifestParseError(msg) from exc

    section = _section(data, "workspace") or _section(data, "project")
    name = section.get("name")
    if not isinstance(name, str) or not name.strip():
        if require_project_name:
            msg = "pixi.toml does not define a workspace or project name"
            raise ManifestParseError(msg)
        name = ""

    return Manifest(
        name=name,
        channels=_channels(section.get("channels", [])),
        dependencies=_dependencies(data.get("dependencies", {})),
        raw=content,
    )


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _channels(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        msg = "pixi.toml channels must be a list"
        raise ManifestParseError(msg)
    channels: list[str] = []
    for item in raw:
        # Channels are plain names or {channel = "...", priority = N} tables.
        if isinstance(item, str):
            channels.append(item)
        elif isinstance(item, dict) and isinstance(item.get("channel"), str):
            channels.append(item["channel"])
    return channels


def _dependencies(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        msg = "pixi.toml [dependencies] must be a table"
        raise ManifestParseError(msg)
    deps: dict[str, str] = {}
    for name, value in raw.items():
        if isinstance(value, str):
            deps[name] = value
        elif isinstance(value, dict) and isinstance(value.get("version"), str):
            deps[name] = value["version"]
        else:
            deps[name] = "*"
    return deps


register(PixiPackageManager.name, PixiPackageManager)
