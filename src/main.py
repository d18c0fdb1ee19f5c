"""whoop-sync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.routers import health, sync
from src.services.database import close_pool, get_connection, init_pool
from src.whoop.errors import SyncAbortedError, TokenError
from src.whoop.sync.store import init_schema

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("whoopsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting whoop-sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)
    if settings.apply_schema_on_startup:
        async with get_connection() as conn:
            await init_schema(conn)
    yield
    await close_pool()
    logger.info("whoop-sync API shut down")


# ---------- Error mapping ----------

async def sync_aborted_handler(request: Request, exc: SyncAbortedError) -> JSONResponse:
    logger.error("Sync aborted at %s: %s", exc.step, exc.cause)
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "step": exc.step, "errors": exc.errors},
    )


async def token_error_handler(request: Request, exc: TokenError) -> JSONResponse:
    logger.warning("Token error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=401, content={"detail": str(exc)})


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="whoop-sync API",
        description="WHOOP data synchronization: cron and on-demand sync triggers.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SyncAbortedError, sync_aborted_handler)
    app.add_exception_handler(TokenError, token_error_handler)

    # ---------- Health check (always at /health, outside the v1 prefix) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.cron_router, prefix=v1_prefix)
    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
