"""Download a pinned pixi release when the binary is not on the host.

The archive is fetched with httpx, the ``pixi`` member is extracted into a
temp file inside the destination directory and renamed over the final path,
so a concurrent ``exec`` of an older binary never sees a half-written file
("text file busy").  Concurrent callers share one download.
"""

from __future__ import annotations

import asyncio
import io
import platform
import shutil
import tarfile
from functools import partial
from pathlib import Path

import httpx
from anyio import to_thread
from loguru import logger

from nebi.server.fsutil import atomic_write
from nebi.server.pkgmgr.base import ToolMissingError

PIXI_VERSION = "v0.58.0"
RELEASE_URL = "https://github.com/prefix-dev/pixi/releases/download/{version}/pixi-{target}.tar.gz"
DOWNLOAD_TIMEOUT = 300.0

_ARCHES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}

_SYSTEMS = {
    "linux": "unknown-linux-musl",
    "darwin": "apple-darwin",
    "windows": "pc-windows-msvc",
}


def platform_target(system: str | None = None, machine: str | None = None) -> str:
    """Return the release target triple for this host (``x86_64-unknown-linux-musl``)."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arch = _ARCHES.get(machine)
    os_part = _SYSTEMS.get(system)
    if arch is None or os_part is None:
        msg = f"unsupported platform for pixi auto-install: {system}/{machine}"
        raise ToolMissingError(msg)
    return f"{arch}-{os_part}"


def binary_name(system: str | None = None) -> str:
    system = (system or platform.system()).lower()
    return "pixi.exe" if system == "windows" else "pixi"


def default_install_dir() -> Path:
    return Path.home() / ".local" / "bin"


def extract_binary(archive: bytes, dest: Path, member: str = "pixi") -> None:
    """Extract *member* from a tar.gz *archive* and atomically place it at *dest*."""
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tf:
            for info in tf.getmembers():
                if info.isfile() and Path(info.name).name == member:
                    extracted = tf.extractfile(info)
                    if extracted is None:  # pragma: no cover
                        break
                    data = extracted.read()
                    break
            else:
                msg = f"{member} not found in release archive"
                raise ToolMissingError(msg)
    except tarfile.TarError as exc:
        msg = f"invalid pixi release archive: {exc}"
        raise ToolMissingError(msg) from exc

    atomic_write(dest, data, mode=0o755)


class PixiInstaller:
    """Single-flight pixi provisioning.

    ``ensure()`` returns a usable binary path: one already on ``PATH``, one
    previously installed into *install_dir*, or a freshly downloaded one.
    """

    def __init__(
        self,
        install_dir: Path | None = None,
        *,
        version: str = PIXI_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.install_dir = install_dir or default_install_dir()
        self.version = version
        self._transport = transport
        self._lock = asyncio.Lock()
        self._path: Path | None = None

    @property
    def target_path(self) -> Path:
        return self.install_dir / binary_name()

    def find_existing(self) -> Path | None:
        found = shutil.which("pixi")
        if found:
            return Path(found)
        if self.target_path.is_file():
            return self.target_path
        return None

    async def ensure(self) -> Path:
        if self._path is not None:
            return self._path
        async with self._lock:
            if self._path is not None:
                return self._path
            existing = self.find_existing()
            if existing is not None:
                self._path = existing
                return existing
            self._path = await self._install()
            return self._path

    async def _install(self) -> Path:
        url = RELEASE_URL.format(version=self.version, target=platform_target())
        logger.info("pixi not found; downloading {} from {}", self.version, url)
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=True,
                timeout=DOWNLOAD_TIMEOUT,
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"failed to download pixi {self.version}: {exc}"
            raise ToolMissingError(msg) from exc

        dest = self.target_path
        await to_thread.run_sync(partial(extract_binary, resp.content, dest, binary_name()))
        logger.info("pixi {} installed at {}", self.version, dest)
        return dest


_default_installer: PixiInstaller | None = None


def get_installer() -> PixiInstaller:
    """Return the process-wide installer (created lazily)."""
    global _default_installer
    if _default_installer is None:
        _default_installer = PixiInstaller()
    return _default_installer
