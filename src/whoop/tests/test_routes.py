"""HTTP-level tests for the cron, on-demand sync and status endpoints."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from src.config import Settings, get_settings
from src.dependencies import get_store
from src.main import app
from src.routers import sync as sync_router
from src.whoop.base import Cycle, OAuthTokens, WhoopProfile
from src.whoop.errors import SyncAbortedError
from src.whoop.sync.orchestrator import SyncMode, SyncSummary
from src.whoop.sync.scheduler import ScheduleReport
from src.whoop.sync.store import InMemoryUpsertStore
from src.whoop.tests.conftest import TEST_USER_ID, make_cycle

CRON_SECRET = "s3cret"


@pytest.fixture
def memory_store() -> InMemoryUpsertStore:
    return InMemoryUpsertStore()


@pytest.fixture
def client(memory_store: InMemoryUpsertStore):
    settings = Settings(database_url="postgresql://test@localhost/test", cron_secret=CRON_SECRET)
    app.dependency_overrides[get_store] = lambda: memory_store
    app.dependency_overrides[get_settings] = lambda: settings
    # No context manager: the lifespan would open a real asyncpg pool
    yield TestClient(app)
    app.dependency_overrides.clear()


def _summary(mode: SyncMode) -> SyncSummary:
    return SyncSummary(
        user_id=TEST_USER_ID,
        mode=mode,
        window_start=None,
        window_end=datetime(2026, 10, 17, tzinfo=timezone.utc),
        counts={"cycles": 2, "sleep": 0, "recovery": 0, "workouts": 0},
    )


class FakeOrchestrator:
    last_mode: SyncMode | None = None
    abort = False

    def __init__(self, token_provider, store, *args, **kwargs) -> None:
        self.store = store

    async def __aenter__(self) -> "FakeOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def run(self, mode: SyncMode) -> SyncSummary:
        FakeOrchestrator.last_mode = mode
        if FakeOrchestrator.abort:
            raise SyncAbortedError("profile", RuntimeError("WHOOP API error: 401"))
        return _summary(mode)


class TestCron:
    def test_missing_secret_rejected(self, client: TestClient) -> None:
        assert client.get("/api/v1/cron/daily-sync").status_code == 401

    def test_wrong_secret_rejected(self, client: TestClient) -> None:
        response = client.get("/api/v1/cron/daily-sync", headers={"x-cron-secret": "nope"})
        assert response.status_code == 401

    def test_unconfigured_secret_disables_endpoint(self, client: TestClient) -> None:
        app.dependency_overrides[get_settings] = lambda: Settings(
            database_url="postgresql://test@localhost/test"
        )
        response = client.get("/api/v1/cron/daily-sync", params={"secret": ""})
        assert response.status_code == 503

    def test_dry_run(self, client: TestClient) -> None:
        response = client.get(
            "/api/v1/cron/daily-sync", params={"secret": CRON_SECRET, "dryRun": "true"}
        )
        assert response.status_code == 200
        assert response.json()["dry_run"] is True

    def test_no_users_maps_to_401(self, client: TestClient) -> None:
        response = client.post("/api/v1/cron/daily-sync", headers={"x-cron-secret": CRON_SECRET})
        assert response.status_code == 401
        assert "No users" in response.json()["detail"]

    def test_runs_scheduler(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        class FakeScheduler:
            def __init__(self, store, **kwargs) -> None:
                pass

            async def run_all(self) -> ScheduleReport:
                return ScheduleReport(total_users=1, tokens_refreshed=1, token_failures=0)

        monkeypatch.setattr(sync_router, "DailySyncScheduler", FakeScheduler)
        response = client.get("/api/v1/cron/daily-sync", params={"token": CRON_SECRET})
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "completed"
        assert body["total_users"] == 1


class TestOnDemandSync:
    @pytest.fixture(autouse=True)
    def fake_orchestrator(self, monkeypatch: pytest.MonkeyPatch) -> None:
        FakeOrchestrator.last_mode = None
        FakeOrchestrator.abort = False
        monkeypatch.setattr(sync_router, "SyncOrchestrator", FakeOrchestrator)

    def test_requires_bearer_token(self, client: TestClient) -> None:
        assert client.post("/api/v1/whoop/sync").status_code == 401

    def test_defaults_to_daily(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/whoop/sync", headers={"Authorization": "Bearer whoop-token"}
        )
        assert response.status_code == 200
        assert response.json()["total_records"] == 2
        assert FakeOrchestrator.last_mode is SyncMode.DAILY

    def test_historical_mode(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/whoop/sync",
            json={"mode": "historical"},
            headers={"Authorization": "Bearer whoop-token"},
        )
        assert response.json()["mode"] == "historical"

    def test_abort_maps_to_502(self, client: TestClient) -> None:
        FakeOrchestrator.abort = True
        response = client.post(
            "/api/v1/whoop/sync", headers={"Authorization": "Bearer whoop-token"}
        )
        assert response.status_code == 502
        assert response.json()["step"] == "profile"


class TestStatusAndHealth:
    def test_sync_status(self, client: TestClient, memory_store: InMemoryUpsertStore) -> None:
        async def seed() -> None:
            await memory_store.upsert_user(
                WhoopProfile(user_id=TEST_USER_ID), OAuthTokens("a", "r")
            )
            await memory_store.upsert_cycle(Cycle.from_api(make_cycle(1, day=12)))

        asyncio.run(seed())
        body = client.get("/api/v1/whoop/sync-status", params={"user_id": TEST_USER_ID}).json()
        assert body["has_tokens"] is True
        assert body["latest_cycle_end"].startswith("2026-10-13")
        assert body["latest_workout_end"] is None

    def test_health_degraded_without_database(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["database"] == "unreachable"
        assert body["status"] == "degraded"
