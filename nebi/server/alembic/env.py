"""Migration environment for the nebi schema.

The target database comes from ``config.attributes["dsn"]`` when the caller
supplies one (tests, ``nebi.cli.alembic_config(dsn)``), otherwise from
``NEBI_DATABASE_DSN``.  Migrations always run on a synchronous psycopg3
connection.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool

from nebi.server.db.engine import normalize_dsn
from nebi.server.db.tables import Base
from nebi.server.settings import NebiSettings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _resolve_dsn() -> str:
    dsn = config.attributes.get("dsn") or NebiSettings().database_dsn
    if not dsn:
        msg = "No database configured: set NEBI_DATABASE_DSN before running migrations."
        raise RuntimeError(msg)
    return normalize_dsn(dsn)


def _model_tables_only(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    # Foreign tables living in the same database are left alone by autogenerate.
    return type_ != "table" or not reflected or compare_to is not None


_OPTIONS: dict[str, Any] = {
    "target_metadata": Base.metadata,
    "include_object": _model_tables_only,
    "compare_type": True,
    "compare_server_default": True,
}


def _emit_sql(dsn: str) -> None:
    context.configure(url=dsn, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


def _apply(dsn: str) -> None:
    engine = create_engine(dsn, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **_OPTIONS)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    _emit_sql(_resolve_dsn())
else:
    _apply(_resolve_dsn())
