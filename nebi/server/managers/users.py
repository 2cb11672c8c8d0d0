"""User accounts: creation, login, admin flag and deletion."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.auth import audit
from nebi.server.auth.passwords import hash_password, verify_password
from nebi.server.db.tables import User, Workspace
from nebi.server.managers.errors import ConflictError, NotFoundError, ValidationError
from nebi.server.models.enums import AuditAction

if TYPE_CHECKING:
    from nebi.server.auth.rbac import AccessControl


class UserNotFoundError(NotFoundError):
    """Raised when a user id or username does not exist."""

    resource = "User"


class DuplicateUserError(ConflictError):
    """Raised when the username is already taken."""


async def create_user(
    db: AsyncSession,
    *,
    username: str,
    password: str,
    email: str = "",
    is_admin: bool = False,
    actor_id: str | None = None,
    acl: AccessControl | None = None,
) -> User:
    """Create a local user.  Raises ``DuplicateUserError`` if the username exists."""
    existing = await db.scalar(select(User.id).where(User.username == username))
    if existing is not None:
        raise DuplicateUserError(username)

    user = User(username=username, email=email, password_hash=hash_password(password), is_admin=is_admin)
    db.add(user)
    await db.flush()
    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.CREATE_USER,
        resource=audit.user_resource(user.id),
        details={"username": username, "is_admin": is_admin},
    )
    await db.commit()
    await db.refresh(user)

    if is_admin and acl is not None:
        acl.make_admin(user.id)
    logger.info("User created: {} ({}, admin={})", username, user.id, is_admin)
    return user


async def get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def get_user_by_username(db: AsyncSession, username: str) -> User | None:
    return await db.scalar(select(User).where(User.username == username))


async def list_users(db: AsyncSession) -> list[User]:
    result = await db.execute(select(User).order_by(User.created_at, User.username))
    return list(result.scalars().all())


async def authenticate(db: AsyncSession, username: str, password: str) -> User | None:
    """Verify credentials, auditing both outcomes.  Returns ``None`` on failure."""
    user = await get_user_by_username(db, username)
    if user is None or not verify_password(password, user.password_hash):
        audit.record(
            db,
            user_id=user.id if user is not None else None,
            action=AuditAction.LOGIN_FAILED,
            resource=audit.user_resource(user.id if user is not None else ""),
            details={"username": username},
        )
        await db.commit()
        logger.info("Login failed for {!r}", username)
        return None

    audit.record(db, user_id=user.id, action=AuditAction.LOGIN, resource=audit.user_resource(user.id))
    await db.commit()
    return user


async def set_admin(
    db: AsyncSession,
    user_id: str,
    is_admin: bool,
    *,
    actor_id: str | None,
    acl: AccessControl,
) -> User:
    user = await get_user(db, user_id)
    if user.id == actor_id and not is_admin:
        msg = "Cannot revoke your own admin rights"
        raise ValidationError(msg)

    user.is_admin = is_admin
    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.MAKE_ADMIN if is_admin else AuditAction.REVOKE_ADMIN,
        resource=audit.user_resource(user.id),
        details={"username": user.username},
    )
    await db.commit()
    await db.refresh(user)

    if is_admin:
        acl.make_admin(user.id)
    else:
        acl.revoke_admin(user.id)
    return user


async def toggle_admin(db: AsyncSession, user_id: str, *, actor_id: str | None, acl: AccessControl) -> User:
    user = await get_user(db, user_id)
    return await set_admin(db, user_id, not user.is_admin, actor_id=actor_id, acl=acl)


async def delete_user(db: AsyncSession, user_id: str, *, actor_id: str | None, acl: AccessControl) -> None:
    """Delete a user and their grants.

    Refuses to delete yourself or a user who still owns live workspaces.
    """
    user = await get_user(db, user_id)
    if user.id == actor_id:
        msg = "Cannot delete your own account"
        raise ValidationError(msg)

    owned = await db.scalar(
        select(func.count()).select_from(Workspace).where(Workspace.owner_id == user.id, Workspace.deleted_at.is_(None))
    )
    if owned:
        msg = f"User '{user.username}' still owns {owned} workspace(s)"
        raise ConflictError(msg)

    audit.record(
        db,
        user_id=actor_id,
        action=AuditAction.DELETE_USER,
        resource=audit.user_resource(user.id),
        details={"username": user.username},
    )
    await db.delete(user)
    await db.commit()
    acl.forget_user(user.id)
    logger.info("User deleted: {} ({})", user.username, user.id)


async def ensure_admin_user(
    db: AsyncSession,
    *,
    username: str,
    password: str,
    email: str,
    acl: AccessControl | None = None,
) -> User:
    """Create the bootstrap admin if missing; otherwise leave it unchanged."""
    existing = await get_user_by_username(db, username)
    if existing is not None:
        return existing
    return await create_user(db, username=username, password=password, email=email, is_admin=True, acl=acl)
