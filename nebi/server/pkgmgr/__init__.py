"""Package-manager adapters.

Importing this package registers the built-in adapters (``pixi``, ``uv``)
so that :func:`create` can resolve a workspace's ``package_manager`` tag.
"""

from nebi.server.pkgmgr.base import (
    InvalidArgsError,
    LogWriter,
    Manifest,
    ManifestParseError,
    PackageInfo,
    PackageManager,
    PackageManagerError,
    ToolFailureError,
    ToolMissingError,
    UnsupportedPackageManagerError,
    available,
    create,
    register,
)
from nebi.server.pkgmgr.pixi import PixiPackageManager
from nebi.server.pkgmgr.uv import UvPackageManager

__all__ = [
    "InvalidArgsError",
    "LogWriter",
    "Manifest",
    "ManifestParseError",
    "PackageInfo",
    "PackageManager",
    "PackageManagerError",
    "PixiPackageManager",
    "ToolFailureError",
    "ToolMissingError",
    "UnsupportedPackageManagerError",
    "UvPackageManager",
    "available",
    "create",
    "register",
]
