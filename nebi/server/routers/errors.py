"""Translate manager exceptions into HTTP errors.

Usage::

    with http_errors():
        ws = await workspaces_mgr.authorize(db, acl, user.id, workspace_id)
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from nebi.server.managers.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from nebi.server.managers.users import DuplicateUserError
from nebi.server.managers.workspaces import DuplicateWorkspaceError


@contextmanager
def http_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"{exc.resource} '{exc}' not found.") from None
    except ForbiddenError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail=str(exc)) from None
    except ConflictError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=_conflict_detail(exc)) from None
    except ValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None


def _conflict_detail(exc: ConflictError) -> str:
    if isinstance(exc, DuplicateWorkspaceError):
        return f"Workspace '{exc}' already exists."
    if isinstance(exc, DuplicateUserError):
        return f"User '{exc}' already exists."
    return str(exc)
