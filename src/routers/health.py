"""Liveness probe for uptime checks and the cron host."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import asyncpg
from fastapi import APIRouter

from src.config import get_settings
from src.models.sync import HealthRead
from src.services.database import fetchval
from src.whoop.config_loader import get_sync_config

router = APIRouter(tags=["system"])
logger = logging.getLogger("whoopsync.health")


@router.get("/health", response_model=HealthRead)
async def health_check() -> HealthRead:
    """Always 200 while the process is up; ``status`` drops to degraded without Postgres."""
    settings = get_settings()
    try:
        await fetchval("SELECT 1")
        database = "connected"
    except (RuntimeError, OSError, asyncpg.PostgresError) as exc:
        logger.warning("Health check DB probe failed: %s", exc)
        database = "unreachable"

    return HealthRead(
        status="healthy" if database == "connected" else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database=database,
        sync_config_version=get_sync_config().version,
        checked_at=datetime.now(timezone.utc),
    )
