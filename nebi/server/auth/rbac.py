"""Role-based access control on top of casbin.

Policy model: classic ``(sub, obj, act)`` triples with role grouping.

- ``owner`` / ``editor`` on workspace W -> ``p(user, env:W, read)`` and ``p(user, env:W, write)``
- ``viewer`` on workspace W             -> ``p(user, env:W, read)``
- admin flag                            -> ``p(user, admin, admin)``

The ``permissions`` and ``users`` tables are the source of truth; the
enforcer is an in-memory index rebuilt with :meth:`AccessControl.load` at
startup and kept in step by the managers on every grant and revoke.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import casbin
from loguru import logger
from sqlalchemy import select

from nebi.server.db.tables import Permission, User, Workspace
from nebi.server.models.enums import RoleName

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

MODEL_TEXT = """
[request_definition]
r = sub, obj, act

[policy_definition]
p = sub, obj, act

[role_definition]
g = _, _

[policy_effect]
e = some(where (p.eft == allow))

[matchers]
m = g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act
"""

ACTION_READ = "read"
ACTION_WRITE = "write"
ACTION_ADMIN = "admin"
ADMIN_OBJECT = "admin"

_WRITE_ROLES = frozenset({RoleName.OWNER, RoleName.EDITOR})
_READ_ROLES = frozenset({RoleName.OWNER, RoleName.EDITOR, RoleName.VIEWER})


def workspace_object(workspace_id: str) -> str:
    return f"env:{workspace_id}"


class AccessControl:
    """Policy decisions for workspace and admin access."""

    def __init__(self) -> None:
        self._enforcer = casbin.Enforcer(casbin.Enforcer.new_model(text=MODEL_TEXT))

    # -- Loading ---------------------------------------------------------------

    async def load(self, db: AsyncSession) -> None:
        """Rebuild all policies from the database."""
        self._enforcer.clear_policy()

        admins = await db.execute(select(User.id).where(User.is_admin.is_(True)))
        admin_count = 0
        for (user_id,) in admins:
            self.make_admin(user_id)
            admin_count += 1

        grants = await db.execute(
            select(Permission.user_id, Permission.workspace_id, Permission.role)
            .join(Workspace, Workspace.id == Permission.workspace_id)
            .where(Workspace.deleted_at.is_(None))
        )
        grant_count = 0
        for user_id, workspace_id, role in grants:
            self.grant(user_id, workspace_id, role)
            grant_count += 1

        logger.info("RBAC: loaded {} admin and {} workspace grants", admin_count, grant_count)

    # -- Workspace grants --------------------------------------------------------

    def grant(self, user_id: str, workspace_id: str, role: str) -> None:
        """Replace the user's access to *workspace_id* with *role*'s actions."""
        role = RoleName(role)
        if role not in _READ_ROLES:
            msg = f"role {role!r} cannot be granted on a workspace"
            raise ValueError(msg)
        obj = workspace_object(workspace_id)
        self._enforcer.remove_filtered_policy(0, user_id, obj)
        self._enforcer.add_policy(user_id, obj, ACTION_READ)
        if role in _WRITE_ROLES:
            self._enforcer.add_policy(user_id, obj, ACTION_WRITE)

    def revoke(self, user_id: str, workspace_id: str) -> None:
        self._enforcer.remove_filtered_policy(0, user_id, workspace_object(workspace_id))

    def forget_workspace(self, workspace_id: str) -> None:
        """Drop every grant on *workspace_id* (after it is deleted)."""
        self._enforcer.remove_filtered_policy(1, workspace_object(workspace_id))

    def forget_user(self, user_id: str) -> None:
        self._enforcer.remove_filtered_policy(0, user_id)

    # -- Admin -------------------------------------------------------------------

    def make_admin(self, user_id: str) -> None:
        self._enforcer.add_policy(user_id, ADMIN_OBJECT, ACTION_ADMIN)

    def revoke_admin(self, user_id: str) -> None:
        self._enforcer.remove_policy(user_id, ADMIN_OBJECT, ACTION_ADMIN)

    # -- Decisions ---------------------------------------------------------------

    def is_admin(self, user_id: str) -> bool:
        return self._enforcer.enforce(user_id, ADMIN_OBJECT, ACTION_ADMIN)

    def can_read(self, user_id: str, workspace_id: str) -> bool:
        return self._enforcer.enforce(user_id, workspace_object(workspace_id), ACTION_READ)

    def can_write(self, user_id: str, workspace_id: str) -> bool:
        return self._enforcer.enforce(user_id, workspace_object(workspace_id), ACTION_WRITE)

    def workspace_ids(self, user_id: str) -> set[str]:
        """Workspaces on which *user_id* holds any policy."""
        prefix = "env:"
        return {
            obj.removeprefix(prefix)
            for _sub, obj, _act in self._enforcer.get_filtered_policy(0, user_id)
            if obj.startswith(prefix)
        }
