"""Shared fixtures for server tests.

- ``fake_manager`` / ``executor``: an in-process pixi stand-in that edits
  ``pixi.toml`` and ``pixi.lock`` directly, so no external tool is needed
- ``client``: httpx client wired to the app with the savepoint session
- ``session_factory``: a real (committing) session factory for tests that
  exercise the worker; tables are truncated afterwards
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from nebi.server.app import app
from nebi.server.auth.rbac import AccessControl
from nebi.server.auth.tokens import create_token
from nebi.server.db.engine import create_session_factory
from nebi.server.db.tables import User
from nebi.server.deps import get_db
from nebi.server.executor import WorkspaceExecutor
from nebi.server.jobqueue import MemoryJobQueue
from nebi.server.logstream import LogBroker
from nebi.server.managers import users as users_mgr
from nebi.server.pkgmgr import LogWriter, Manifest, PackageInfo, PackageManager, ToolFailureError
from nebi.server.pkgmgr.pixi import parse_manifest
from nebi.server.settings import get_settings

# ---------------------------------------------------------------------------
# Fake package manager
# ---------------------------------------------------------------------------


def render_manifest(name: str, channels: Sequence[str], dependencies: dict[str, str]) -> str:
    lines = [
        "[workspace]",
        f'name = "{name}"',
        "channels = [" + ", ".join(f'"{c}"' for c in channels) + "]",
        'platforms = ["linux-64"]',
        "",
        "[dependencies]",
    ]
    lines += [f'"{dep}" = "{spec}"' for dep, spec in sorted(dependencies.items())]
    return "\n".join(lines) + "\n"


def render_lock(dependencies: dict[str, str]) -> str:
    lines = ["version: 6", "packages:"]
    lines += [f"- name: {dep}" for dep in sorted(dependencies)]
    return "\n".join(lines) + "\n"


class FakePackageManager(PackageManager):
    """Behaves like pixi from the executor's point of view.

    ``fail_on`` names make ``install`` exit like a failed solve,
    ``explode_on`` names raise an unexpected exception, and ``gate`` (when
    set) blocks ``install`` until the event fires.
    """

    name = "pixi"
    manifest_filename = "pixi.toml"
    lock_filename = "pixi.lock"
    default_channels = ("conda-forge",)

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.fail_on: set[str] = set()
        self.explode_on: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def _log(self, writer: LogWriter | None, line: str) -> None:
        if writer is not None:
            await writer.write(line + "\n")

    def _read(self, path: Path) -> Manifest:
        return parse_manifest((path / self.manifest_filename).read_text(), require_project_name=False)

    def _write(self, path: Path, manifest: Manifest) -> None:
        (path / self.manifest_filename).write_text(
            render_manifest(manifest.name, manifest.channels, manifest.dependencies)
        )
        (path / self.lock_filename).write_text(render_lock(manifest.dependencies))

    def _check(self, command: str, packages: Sequence[str]) -> None:
        if self.explode_on.intersection(packages):
            msg = "solver crashed"
            raise RuntimeError(msg)
        if self.fail_on.intersection(packages):
            raise ToolFailureError(command, 1, "No candidates were found")

    async def init(
        self,
        path: Path,
        *,
        name: str,
        channels: Sequence[str] = (),
        writer: LogWriter | None = None,
    ) -> None:
        self.calls.append(("init", (name,)))
        path.mkdir(parents=True, exist_ok=True)
        self._write(path, Manifest(name=name, channels=list(channels)))
        await self._log(writer, f"Created {path / self.manifest_filename}")

    async def install(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        self.calls.append(("install", tuple(packages)))
        if self.gate is not None:
            await self.gate.wait()
        self._check("pixi add", packages)
        manifest = self._read(path)
        for pkg in packages:
            manifest.dependencies[pkg] = "*"
        self._write(path, manifest)
        await self._log(writer, f"Added {', '.join(packages)}")

    async def install_from_manifest(self, path: Path, *, writer: LogWriter | None = None) -> None:
        self.calls.append(("install_from_manifest", ()))
        if not (path / self.lock_filename).exists():
            self._write(path, self._read(path))
        await self._log(writer, "Environment installed")

    async def remove(self, path: Path, packages: Sequence[str], *, writer: LogWriter | None = None) -> None:
        self.calls.append(("remove", tuple(packages)))
        manifest = self._read(path)
        for pkg in packages:
            if pkg not in manifest.dependencies:
                raise ToolFailureError("pixi remove", 1, f"{pkg} is not a dependency")
            del manifest.dependencies[pkg]
        self._write(path, manifest)
        await self._log(writer, f"Removed {', '.join(packages)}")

    async def update(
        self,
        path: Path,
        packages: Sequence[str] = (),
        *,
        writer: LogWriter | None = None,
    ) -> None:
        self.calls.append(("update", tuple(packages)))

    async def list(self, path: Path) -> list[PackageInfo]:
        deps = self._read(path).dependencies
        return [PackageInfo(name=dep, version=spec) for dep, spec in sorted(deps.items())]

    async def get_manifest(self, path: Path) -> Manifest:
        return parse_manifest((path / self.manifest_filename).read_text())


@pytest.fixture
def fake_manager() -> FakePackageManager:
    return FakePackageManager()


@pytest.fixture
def executor(tmp_path: Path, fake_manager: FakePackageManager) -> WorkspaceExecutor:
    """Executor rooted in ``tmp_path`` whose every workspace uses ``fake_manager``."""
    return WorkspaceExecutor(tmp_path / "workspaces", manager_factory=lambda _tag, **_opts: fake_manager)


@pytest.fixture
def queue() -> MemoryJobQueue:
    return MemoryJobQueue(100, enqueue_timeout=1.0)


@pytest.fixture
def broker() -> LogBroker:
    return LogBroker()


# ---------------------------------------------------------------------------
# Users and tokens (savepoint session)
# ---------------------------------------------------------------------------


@pytest.fixture
def acl() -> AccessControl:
    return AccessControl()


async def _make_user(db: AsyncSession, acl: AccessControl, username: str, *, is_admin: bool = False) -> User:
    return await users_mgr.create_user(
        db,
        username=username,
        password=f"{username}-password",
        email=f"{username}@example.com",
        is_admin=is_admin,
        acl=acl,
    )


@pytest.fixture
async def admin(db_session: AsyncSession, acl: AccessControl) -> User:
    return await _make_user(db_session, acl, "admin", is_admin=True)


@pytest.fixture
async def alice(db_session: AsyncSession, acl: AccessControl) -> User:
    return await _make_user(db_session, acl, "alice")


@pytest.fixture
async def bob(db_session: AsyncSession, acl: AccessControl) -> User:
    return await _make_user(db_session, acl, "bob")


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Build an ``Authorization`` header for a user."""
    secret = get_settings().auth_jwt_secret.get_secret_value()

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_token(user.id, user.username, secret)}"}

    return _headers


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
async def client(
    db_session: AsyncSession,
    acl: AccessControl,
    queue: MemoryJobQueue,
    broker: LogBroker,
    executor: WorkspaceExecutor,
) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app with a test DB session.

    Overrides ``get_db`` so every request uses the savepoint-isolated
    ``db_session`` fixture from the root conftest.  The app lifespan does
    NOT run under ``ASGITransport``, so state fields are pre-set here.  No
    worker is started: queued jobs stay ``pending`` in ``queue``.
    """

    async def _override_get_db() -> AsyncIterator[AsyncSession]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    # Pre-set state fields (lifespan does not run under ASGITransport).
    app.state.db_engine = None
    app.state.db_session_factory = None
    app.state.redis = None
    app.state.worker = None
    app.state.queue = queue
    app.state.broker = broker
    app.state.acl = acl
    app.state.executor = executor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Committing sessions (worker tests)
# ---------------------------------------------------------------------------

_TRUNCATE = text("TRUNCATE audit_logs, workspace_versions, packages, permissions, jobs, workspaces, users CASCADE")


@pytest.fixture
async def session_factory(async_engine: AsyncEngine) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory whose commits are real; every table except roles is emptied afterwards."""
    yield create_session_factory(async_engine)
    async with async_engine.begin() as conn:
        await conn.execute(_TRUNCATE)
