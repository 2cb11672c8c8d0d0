"""Audit trail for sensitive mutations.

Entries are added to the caller's session and committed together with the
change they describe, so an audit row exists iff the change does.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger
from sqlalchemy import select

from nebi.server.db.tables import AuditLog

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from nebi.server.models.enums import AuditAction

DEFAULT_LIST_LIMIT = 100


def workspace_resource(workspace_id: str) -> str:
    return f"env:{workspace_id}"


def user_resource(user_id: str) -> str:
    return f"user:{user_id}"


def permission_resource(permission_id: str) -> str:
    return f"permission:{permission_id}"


def record(
    db: AsyncSession,
    *,
    user_id: str | None,
    action: AuditAction,
    resource: str,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit entry on *db*.  The caller commits."""
    payload = dict(details or {})
    payload.setdefault("resource_id", resource.partition(":")[2])
    entry = AuditLog(user_id=user_id, action=str(action), resource=resource, details=payload)
    db.add(entry)
    logger.debug("Audit: {} {} by {}", action, resource, user_id)
    return entry


async def list_entries(
    db: AsyncSession,
    *,
    user_id: str | None = None,
    action: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = 0,
) -> list[AuditLog]:
    """Newest entries first, optionally filtered by actor and action."""
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action is not None:
        stmt = stmt.where(AuditLog.action == action)
    result = await db.execute(stmt.limit(limit).offset(offset))
    return list(result.scalars().all())
