"""Sync trigger endpoints: daily cron, on-demand sync, sync status."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from src.dependencies import AppSettings, BearerToken, CronAuthorized, Store
from src.models.sync import CronDryRunRead, SyncRequest, SyncStatusRead
from src.whoop.auth import StaticTokenProvider
from src.whoop.sync.orchestrator import SyncOrchestrator
from src.whoop.sync.scheduler import DailySyncScheduler

logger = logging.getLogger("whoopsync.routers.sync")

cron_router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[CronAuthorized])
router = APIRouter(prefix="/whoop", tags=["whoop"])


# ---------- Cron ----------

@cron_router.api_route("/daily-sync", methods=["GET", "POST"])
async def daily_sync(
    settings: AppSettings,
    store: Store,
    dry_run: bool = Query(default=False, alias="dryRun"),
) -> Any:
    if dry_run:
        logger.info("Daily sync dry run requested")
        return CronDryRunRead()

    scheduler = DailySyncScheduler(
        store,
        client_id=settings.whoop_client_id,
        client_secret=settings.whoop_client_secret,
    )
    report = await scheduler.run_all()
    return {"status": "completed", **report.to_dict()}


# ---------- On-demand ----------

@router.post("/sync")
async def run_sync(token: BearerToken, store: Store, body: SyncRequest | None = None) -> Any:
    mode = body.mode if body else SyncRequest().mode
    async with SyncOrchestrator(StaticTokenProvider(token), store) as orchestrator:
        summary = await orchestrator.run(mode)
    return {"status": "completed", **summary.to_dict()}


@router.get("/sync-status", response_model=SyncStatusRead)
async def sync_status(store: Store, user_id: int = Query(...)) -> Any:
    return SyncStatusRead(
        user_id=user_id,
        latest_cycle_end=await store.latest_cycle_end(user_id),
        latest_workout_end=await store.latest_workout_end(user_id),
        has_tokens=await store.get_user_tokens(user_id) is not None,
    )
