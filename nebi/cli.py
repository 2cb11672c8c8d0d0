import click


@click.group()
def main() -> None:
    """Nebi - Multi-user pixi/uv workspace service."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from NEBI_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from NEBI_PORT or 8460).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the Nebi API server and its job workers."""
    import uvicorn

    from nebi.server.settings import NebiSettings

    settings = NebiSettings()

    uvicorn.run(
        "nebi.server.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Allow in-flight jobs to finish during shutdown, plus 60s for
        # post-drain cleanup (SSE signal, Valkey close, DB dispose).
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 60,
    )


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def alembic_config(dsn: str | None = None):
    """Return the Alembic config for the schema shipped with nebi.

    The ini file sits next to the migration scripts inside the package.
    *dsn* overrides ``NEBI_DATABASE_DSN`` for a single invocation.
    """
    from pathlib import Path

    from alembic.config import Config

    cfg = Config(str(Path(__file__).parent / "server" / "alembic.ini"))
    if dsn is not None:
        cfg.attributes["dsn"] = dsn
    return cfg


@main.group()
@click.option("--dsn", envvar="NEBI_DATABASE_DSN", default=None, help="Database to migrate (default: NEBI_DATABASE_DSN).")
@click.pass_context
def db(ctx: click.Context, dsn: str | None) -> None:
    """Schema migrations for the nebi database."""
    ctx.obj = alembic_config(dsn)


@db.command()
@click.option("--revision", default="head", help="Target revision (default: head).")
@click.pass_obj
def upgrade(cfg, revision: str) -> None:
    """Apply migrations up to *revision*."""
    from alembic import command

    command.upgrade(cfg, revision)
    click.echo(f"Schema is at {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: one step back).")
@click.pass_obj
def downgrade(cfg, revision: str) -> None:
    """Revert migrations down to *revision*."""
    from alembic import command

    command.downgrade(cfg, revision)
    click.echo(f"Schema reverted to {revision}.")


@db.command()
@click.argument("message")
@click.pass_obj
def migrate(cfg, message: str) -> None:
    """Generate a migration script from the current table definitions."""
    from alembic import command

    command.revision(cfg, message=message, autogenerate=True)
    click.echo(f"New migration: {message}")


@db.command()
@click.option("--history", "show_history", is_flag=True, default=False, help="List every revision instead.")
@click.pass_obj
def current(cfg, show_history: bool) -> None:
    """Print the applied revision."""
    from alembic import command

    if show_history:
        command.history(cfg, verbose=True)
    else:
        command.current(cfg, verbose=True)


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@main.group()
def user() -> None:
    """Local user management commands."""


@user.command("create")
@click.argument("username")
@click.option("--email", default="", help="Contact email.")
@click.option("--admin", "is_admin", is_flag=True, default=False, help="Grant the admin policy.")
@click.password_option(help="Password (prompted when omitted).")
def create_user(username: str, email: str, is_admin: bool, password: str) -> None:
    """Create a local user directly in the database."""
    import asyncio

    from nebi.server.settings import NebiSettings

    settings = NebiSettings()
    if not settings.database_dsn:
        raise click.ClickException("NEBI_DATABASE_DSN is not set.")

    from nebi.server.db.engine import create_engine, create_session_factory
    from nebi.server.managers import users as users_mgr

    async def _create() -> str:
        engine = create_engine(settings.database_dsn)
        try:
            async with create_session_factory(engine)() as session:
                created = await users_mgr.create_user(
                    session, username=username, password=password, email=email, is_admin=is_admin
                )
                return created.id
        finally:
            await engine.dispose()

    try:
        user_id = asyncio.run(_create())
    except users_mgr.DuplicateUserError:
        raise click.ClickException(f"User '{username}' already exists.") from None
    click.echo(f"User created: {username} ({user_id})")


if __name__ == "__main__":
    main()
