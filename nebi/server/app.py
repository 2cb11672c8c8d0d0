import platform
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from loguru import logger
from sse_starlette.sse import AppStatus
from starlette.exceptions import HTTPException as StarletteHTTPException

from nebi.server import pkgmgr
from nebi.server.auth.rbac import AccessControl
from nebi.server.db.engine import create_engine, create_session_factory
from nebi.server.deps import Settings
from nebi.server.executor import WorkspaceExecutor
from nebi.server.jobqueue import JobQueue, MemoryJobQueue, ValkeyJobQueue
from nebi.server.log import setup_logging
from nebi.server.logstream import LogBroker
from nebi.server.managers import permissions as permissions_mgr
from nebi.server.managers import users as users_mgr
from nebi.server.models.api import VersionInfo
from nebi.server.settings import DEFAULT_JWT_SECRET, NebiSettings, get_settings
from nebi.server.worker import Worker

# Redis reads must outlive the queue's BLPOP timeout.
REDIS_SOCKET_TIMEOUT = 10


def _create_queue(settings: NebiSettings, redis: aioredis.Redis | None) -> JobQueue:
    """Create the job queue backend based on configuration."""
    if settings.queue_type == "valkey":
        assert redis is not None  # noqa: S101
        return ValkeyJobQueue(redis)
    timeout = settings.queue_enqueue_timeout if settings.queue_enqueue_timeout > 0 else None
    return MemoryJobQueue(settings.queue_buffer_size, enqueue_timeout=timeout)


async def _bootstrap(app: FastAPI, settings: NebiSettings) -> None:
    """Seed roles, create the bootstrap admin and load access policies."""
    async with app.state.db_session_factory() as db:
        await permissions_mgr.ensure_roles(db)
        if settings.admin_password is not None:
            admin = await users_mgr.ensure_admin_user(
                db,
                username=settings.admin_username,
                password=settings.admin_password.get_secret_value(),
                email=settings.admin_email,
            )
            logger.info("Bootstrap admin: {} ({})", admin.username, admin.id)
        await app.state.acl.load(db)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    logger.info("Nebi server starting (host={}, port={})", settings.host, settings.port)
    if settings.auth_jwt_secret.get_secret_value() == DEFAULT_JWT_SECRET:
        logger.warning("NEBI_AUTH_JWT_SECRET is the default value -- set it in production")

    # -- Initialise state fields (always present, possibly None) ----------------
    _app.state.db_engine = None
    _app.state.db_session_factory = None
    _app.state.redis = None
    _app.state.queue = None
    _app.state.worker = None
    _app.state.broker = LogBroker()
    _app.state.acl = AccessControl()
    _app.state.executor = WorkspaceExecutor(
        settings.storage_workspaces_dir,
        manager_options={"pixi": {"auto_install": settings.pixi_auto_install}},
    )
    logger.info("Workspaces dir: {}", _app.state.executor.workspaces_dir)

    # -- Database --------------------------------------------------------------
    if settings.database_dsn:
        engine = create_engine(settings.database_dsn)
        _app.state.db_engine = engine
        _app.state.db_session_factory = create_session_factory(engine)
        logger.info("PostgreSQL: connected (pool_size=5, max_overflow=10)")
    else:
        logger.warning("NEBI_DATABASE_DSN not set -- database features disabled")

    # -- Queue -----------------------------------------------------------------
    if settings.queue_type == "valkey":
        _app.state.redis = aioredis.from_url(
            settings.valkey_url(),
            decode_responses=False,
            socket_connect_timeout=5,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
        )
        logger.info("Valkey: connected ({})", settings.queue_valkey_addr)
    _app.state.queue = _create_queue(settings, _app.state.redis)
    logger.info("Job queue: {}", settings.queue_type)

    # -- Worker ----------------------------------------------------------------
    if _app.state.db_session_factory is not None:
        await _bootstrap(_app, settings)

        worker = Worker(
            session_factory=_app.state.db_session_factory,
            queue=_app.state.queue,
            executor=_app.state.executor,
            broker=_app.state.broker,
            acl=_app.state.acl,
            redis=_app.state.redis,
            max_workers=settings.max_workers,
            flush_interval=settings.log_flush_interval,
            channel_ttl=settings.log_channel_ttl,
            instance_id=settings.instance_id,
        )
        _app.state.worker = worker
        # Startup recovery: fail interrupted jobs, re-enqueue pending ones.
        await worker.recover()
        worker.start()

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Nebi server shutting down")

    # 1. Stop dispatching and let in-flight jobs finish.
    if _app.state.worker is not None:
        await _app.state.worker.stop(timeout=settings.graceful_shutdown_timeout)

    # 2. Signal SSE streams to close.  Must happen AFTER the worker drains so
    #    that streams can deliver the terminal marker before closing.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")

    await _app.state.queue.close()

    # Close Redis client (returns pooled connections).
    if _app.state.redis is not None:
        await _app.state.redis.aclose()
        logger.info("Valkey: closed")

    # Dispose DB engine (closes all pooled connections).
    if _app.state.db_engine is not None:
        await _app.state.db_engine.dispose()
        logger.info("PostgreSQL: disposed")


app = FastAPI(title="Nebi", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error bodies -- every error is rendered as {"error": "..."}
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse({"error": "; ".join(parts) or "Invalid request"}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


def _nebi_version() -> str:
    try:
        return package_version("nebi")
    except PackageNotFoundError:
        return "0.0.0+unknown"


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@api.get("/version", response_model=VersionInfo)
async def version(request: Request, settings: Settings) -> VersionInfo:
    return VersionInfo(
        version=_nebi_version(),
        python_version=platform.python_version(),
        os=sys.platform,
        arch=platform.machine(),
        package_managers=pkgmgr.available(),
        features={
            "database": request.app.state.db_session_factory is not None,
            "valkey": settings.queue_type == "valkey",
            "worker": request.app.state.worker is not None and request.app.state.worker.max_workers > 0,
            "pixi_auto_install": settings.pixi_auto_install,
        },
    )


# -- Routers -------------------------------------------------------------------
from nebi.server.routers.admin import router as admin_router  # noqa: E402
from nebi.server.routers.auth import router as auth_router  # noqa: E402
from nebi.server.routers.jobs import router as jobs_router  # noqa: E402
from nebi.server.routers.workspaces import router as workspaces_router  # noqa: E402

api.include_router(auth_router)
api.include_router(workspaces_router)
api.include_router(jobs_router)
api.include_router(admin_router)

app.include_router(api)
