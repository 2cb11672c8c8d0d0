"""Installed-package rows, rebuilt from the adapter after each mutation."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.db.tables import Package
from nebi.server.pkgmgr import PackageInfo


async def list_packages(db: AsyncSession, workspace_id: str) -> list[Package]:
    result = await db.execute(select(Package).where(Package.workspace_id == workspace_id).order_by(Package.name))
    return list(result.scalars().all())


async def replace_packages(db: AsyncSession, workspace_id: str, packages: Iterable[PackageInfo]) -> None:
    """Delete every row for the workspace and insert *packages* in one transaction."""
    await db.execute(delete(Package).where(Package.workspace_id == workspace_id))
    db.add_all(Package(workspace_id=workspace_id, name=p.name, version=p.version) for p in packages)
    await db.commit()


async def delete_packages(db: AsyncSession, workspace_id: str) -> None:
    await db.execute(delete(Package).where(Package.workspace_id == workspace_id))
    await db.commit()
