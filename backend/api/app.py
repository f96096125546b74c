"""FastAPI application factory"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from api.core.config import get_settings
from api.core.database import get_database_manager, init_database_manager
from api.core.dependencies import close_nightbot_api
from api.core.logging import setup_logging
from api.routers import nightbot_router
from shared.database import DatabaseManager

logger = logging.getLogger(__name__)

STARTUP_DB_TIMEOUT = 30
RETRY_DELAY_MAX = 60


async def _keep_connecting(db_manager: DatabaseManager) -> None:
    """Retry the pool in the background after a failed startup connect."""
    delay = 5
    while not db_manager.is_connected:
        await asyncio.sleep(delay)
        try:
            await db_manager.connect()
        except Exception as e:
            delay = min(delay * 2, RETRY_DELAY_MAX)
            logger.warning(f"DB background connect failed ({e!r}), next try in {delay}s")
        else:
            logger.info("Database connected (background retry)")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    app.state.started_at = time.time()
    logger.info(f"Starting Nightbot snapshot API ({settings.environment})")

    # Requests answer 503 (get_db_pool) until the pool exists
    db_manager = init_database_manager(settings.database_url)
    retry_task: asyncio.Task | None = None
    try:
        await asyncio.wait_for(db_manager.connect(), timeout=STARTUP_DB_TIMEOUT)
    except Exception as e:
        logger.error(f"DB unavailable at startup ({e!r}), retrying in background")
        retry_task = asyncio.create_task(_keep_connecting(db_manager))

    yield

    logger.info("Shutting down Nightbot snapshot API")
    if retry_task is not None:
        retry_task.cancel()
    await close_nightbot_api()
    await db_manager.disconnect()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Nightbot Snapshot API",
        description="Backup, diff and restore of Nightbot custom commands",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.include_router(nightbot_router.router)

    def uptime() -> int:
        return int(time.time() - app.state.started_at)

    @app.get("/health")
    async def health():
        """Liveness: no DB round trip"""
        return {"status": "healthy", "uptime_seconds": uptime()}

    @app.get("/status")
    async def status():
        """Readiness: 503 until the DB answers"""
        db_ok = await get_database_manager().check_health()
        return JSONResponse(
            status_code=200 if db_ok else 503,
            content={
                "service": "nightbot-snapshots",
                "environment": settings.environment,
                "uptime_seconds": uptime(),
                "db_connected": db_ok,
            },
        )

    @app.api_route("/ping", methods=["GET", "HEAD"], response_class=PlainTextResponse)
    async def ping():
        return "pong"

    return app
