"""FastAPI dependency injection for DB sessions, services and auth.

Usage in route handlers::

    @router.get("/workspaces/{workspace_id}")
    async def get_workspace(db: DbSession, user: CurrentUser, acl: Acl, workspace_id: str):
        ...

Dependencies raise HTTP 503 if the backing service was not configured
(``NEBI_DATABASE_DSN`` unset) and 401/403 for authentication failures.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.auth.rbac import AccessControl
from nebi.server.auth.tokens import InvalidTokenError, decode_token
from nebi.server.db.tables import User
from nebi.server.executor import WorkspaceExecutor
from nebi.server.jobqueue import JobQueue
from nebi.server.logstream import LogBroker
from nebi.server.settings import NebiSettings, get_settings


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an async SQLAlchemy session, closing it after the request.

    Managers commit on success.  If the handler raises, the session is
    simply closed and the implicit transaction is rolled back.
    """
    session_factory = request.app.state.db_session_factory
    if session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured (NEBI_DATABASE_DSN is unset).",
        )
    session: AsyncSession = session_factory()
    try:
        yield session
    finally:
        await session.close()


async def get_redis(request: Request) -> aioredis.Redis | None:
    """Return the shared async Redis client, or ``None`` in memory-queue mode."""
    return request.app.state.redis


async def get_queue(
    request: Request,
    settings: Annotated[NebiSettings, Depends(get_settings)],
) -> JobQueue:
    """Return the job queue.  Raises 503 when job processing is disabled.

    Only command endpoints depend on the queue, so with ``max_workers == 0``
    they fail before any row is written.
    """
    if settings.max_workers <= 0:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job processing is disabled")
    queue: JobQueue | None = request.app.state.queue
    if queue is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue not available.")
    return queue


async def get_broker(request: Request) -> LogBroker:
    return request.app.state.broker


async def get_acl(request: Request) -> AccessControl:
    return request.app.state.acl


async def get_executor(request: Request) -> WorkspaceExecutor:
    return request.app.state.executor


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    # EventSource cannot set headers, so streams may pass ?token=.
    return request.query_params.get("token") or None


async def get_current_user(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[NebiSettings, Depends(get_settings)],
) -> User:
    """Resolve the bearer token to a user.  Raises 401 on any failure."""
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = decode_token(token, settings.auth_jwt_secret.get_secret_value())
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    user = await db.get(User, claims.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User no longer exists")
    return user


async def get_admin_user(
    user: Annotated[User, Depends(get_current_user)],
    acl: Annotated[AccessControl, Depends(get_acl)],
) -> User:
    if not acl.is_admin(user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


# -- Annotated type aliases for concise route signatures ---------------------

DbSession = Annotated[AsyncSession, Depends(get_db)]
"""Annotated dependency: async SQLAlchemy session (auto-closed after request)."""

RedisClient = Annotated[aioredis.Redis | None, Depends(get_redis)]
"""Annotated dependency: shared async Redis client, ``None`` when not configured."""

Queue = Annotated[JobQueue, Depends(get_queue)]
Broker = Annotated[LogBroker, Depends(get_broker)]
Acl = Annotated[AccessControl, Depends(get_acl)]
Executor = Annotated[WorkspaceExecutor, Depends(get_executor)]
Settings = Annotated[NebiSettings, Depends(get_settings)]

CurrentUser = Annotated[User, Depends(get_current_user)]
"""Annotated dependency: the authenticated user (401 otherwise)."""

AdminUser = Annotated[User, Depends(get_admin_user)]
"""Annotated dependency: an authenticated admin (403 otherwise)."""
