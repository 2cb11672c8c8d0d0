"""Container-backed fixtures for integration tests.

PostgreSQL and Redis run once per session via testcontainers; Docker must be
available.  The schema is created by the same Alembic scripts ``nebi db
upgrade`` runs.  Every test gets its own outer transaction (rolled back on
teardown) and an empty Redis database.

Mark tests that use these fixtures with ``@pytest.mark.integration``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import redis.asyncio as aioredis
from alembic import command
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from nebi.cli import alembic_config
from nebi.server.db.engine import create_engine
from nebi.server.settings import _get_settings_cached

POSTGRES_IMAGE = "postgres:17"
REDIS_IMAGE = "redis:7"


@pytest.fixture(scope="session")
def nebi_env() -> Iterator[pytest.MonkeyPatch]:
    """Session-wide environment overrides, undone when the run ends.

    Settings are cached per process, so the cache is dropped on every change.
    """
    with pytest.MonkeyPatch.context() as mp:
        _get_settings_cached.cache_clear()
        yield mp
    _get_settings_cached.cache_clear()


def _export(env: pytest.MonkeyPatch, name: str, value: str) -> None:
    env.setenv(name, value)
    _get_settings_cached.cache_clear()


@pytest.fixture(scope="session")
def pg_container() -> Iterator[PostgresContainer]:
    container = PostgresContainer(
        image=POSTGRES_IMAGE,
        username="nebi",
        password="nebi",
        dbname="nebi_test",
        driver="psycopg",
    )
    with container:
        yield container


@pytest.fixture(scope="session")
def redis_container() -> Iterator[RedisContainer]:
    with RedisContainer(image=REDIS_IMAGE) as container:
        yield container


@pytest.fixture(scope="session")
def pg_url(pg_container: PostgresContainer, nebi_env: pytest.MonkeyPatch) -> str:
    """DSN of the test database, migrated to the latest revision."""
    dsn = pg_container.get_connection_url()
    _export(nebi_env, "NEBI_DATABASE_DSN", dsn)
    command.upgrade(alembic_config(dsn), "head")
    return dsn


@pytest.fixture(scope="session")
def redis_url(redis_container: RedisContainer, nebi_env: pytest.MonkeyPatch) -> str:
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    url = f"redis://{host}:{port}/0"
    _export(nebi_env, "NEBI_QUEUE_VALKEY_ADDR", url)
    return url


@pytest.fixture(scope="session")
async def async_engine(pg_url: str) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(pg_url)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Session joined to an outer transaction that is rolled back afterwards.

    ``commit()`` in the code under test only releases a savepoint.
    """
    async with async_engine.connect() as conn:
        outer = await conn.begin()
        session = AsyncSession(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
        try:
            yield session
        finally:
            await session.close()
            await outer.rollback()


@pytest.fixture
async def redis_client(redis_url: str) -> AsyncIterator[aioredis.Redis]:
    client = aioredis.from_url(redis_url)
    await client.flushdb()
    try:
        yield client
    finally:
        await client.flushdb()
        await client.aclose()
