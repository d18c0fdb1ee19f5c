"""Pydantic models for the sync trigger endpoints."""

from __future__ import annotations

from datetime import datetime

from src.models.base import SyncApiBase
from src.whoop.sync.orchestrator import SyncMode


class SyncRequest(SyncApiBase):
    mode: SyncMode = SyncMode.DAILY


class SyncStatusRead(SyncApiBase):
    user_id: int
    latest_cycle_end: datetime | None = None
    latest_workout_end: datetime | None = None
    has_tokens: bool = False


class CronDryRunRead(SyncApiBase):
    status: str = "ok"
    dry_run: bool = True
    message: str = "Cron endpoint reachable; no sync performed"


class HealthRead(SyncApiBase):
    status: str
    version: str
    environment: str
    database: str
    sync_config_version: str
    checked_at: datetime
