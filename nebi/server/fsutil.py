"""Filesystem helpers shared by the executor and the package-manager adapters.

All functions here are synchronous; async callers run them through
``anyio.to_thread.run_sync`` so the event loop is never blocked on disk I/O.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import stat
import tempfile
from pathlib import Path

_UNITS = ("KB", "MB", "GB", "TB", "PB", "EB")


def atomic_write(path: Path, data: str | bytes, mode: int | None = None) -> None:
    """Write data atomically: temp file + rename.

    The temp file is created in the destination directory so ``os.replace``
    is atomic on POSIX.  Readers (and concurrent ``exec`` of binaries) never
    observe a partially written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def read_text_or_empty(path: Path) -> str:
    """Return the file's text, or ``""`` if it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def rmtree(path: Path) -> bool:
    """Remove a directory tree.  Returns ``False`` if it did not exist."""
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def dir_size(path: Path) -> int:
    """Sum the sizes of regular files under *path*.

    Symlinks are not followed.  A missing path has size 0; files that vanish
    during the walk are skipped.
    """
    if not path.exists():
        return 0
    total = 0
    for root, _dirs, files in os.walk(path, followlinks=False):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except FileNotFoundError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def format_bytes(size: int) -> str:
    """Render a byte count as a short human-readable string (``1.5 MB``)."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in _UNITS:
        value /= 1024
        if value < 1024 or unit == _UNITS[-1]:
            return f"{value:.1f} {unit}"
    raise AssertionError("unreachable")  # pragma: no cover
