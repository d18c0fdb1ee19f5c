"""Tests for the daily multi-user sync."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from src.whoop.base import OAuthTokens, WhoopProfile
from src.whoop.config_loader import SyncConfig
from src.whoop.errors import PersistenceError, TokenError
from src.whoop.sync.orchestrator import SyncMode, SyncSummary
from src.whoop.sync.scheduler import DailySyncScheduler
from src.whoop.sync.store import InMemoryUpsertStore
from src.whoop.tests.conftest import FakeClock


class FakeOrchestrator:
    """Stands in for SyncOrchestrator; records which token it was given."""

    def __init__(self, token: str, fail: bool = False) -> None:
        self.token = token
        self.fail = fail
        self.closed = False

    async def __aenter__(self) -> "FakeOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    async def run(self, mode: SyncMode) -> SyncSummary:
        if self.fail:
            raise RuntimeError("API unavailable")
        return SyncSummary(
            user_id=0,
            mode=mode,
            window_start=None,
            window_end=datetime(2026, 10, 17, tzinfo=timezone.utc),
            counts={"cycles": 1},
        )


def _token_endpoint(bad_refresh_tokens: set[str]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        refresh = parse_qs(request.content.decode())["refresh_token"][0]
        if refresh in bad_refresh_tokens:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={
                "access_token": f"access-for-{refresh}",
                "refresh_token": f"{refresh}-next",
                "expires_in": 3600,
            },
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _add_user(store: InMemoryUpsertStore, user_id: int) -> None:
    await store.upsert_user(
        WhoopProfile(user_id=user_id, email=f"u{user_id}@example.com"),
        OAuthTokens("old-access", f"refresh-{user_id}"),
    )


@pytest.fixture
def scheduler_parts(store: InMemoryUpsertStore, sync_config: SyncConfig, clock: FakeClock):
    created: list[FakeOrchestrator] = []
    failing_tokens: set[str] = set()

    def build(bad_refresh_tokens: set[str] = frozenset()) -> DailySyncScheduler:
        def factory(provider) -> FakeOrchestrator:
            orchestrator = FakeOrchestrator(provider.tokens.access_token)
            orchestrator.fail = orchestrator.token in failing_tokens
            created.append(orchestrator)
            return orchestrator

        return DailySyncScheduler(
            store,
            sync_config,
            client_id="test_client_id",
            client_secret="test_client_secret",
            orchestrator_factory=factory,
            http_client=_token_endpoint(set(bad_refresh_tokens)),
            sleep=clock.sleep,
        )

    return build, created, failing_tokens


class TestDailySyncScheduler:
    @pytest.mark.asyncio
    async def test_no_users_raises(self, scheduler_parts) -> None:
        build, _, _ = scheduler_parts
        with pytest.raises(TokenError, match="No users"):
            await build().run_all()

    @pytest.mark.asyncio
    async def test_refreshes_persists_and_syncs_every_user(
        self, scheduler_parts, store: InMemoryUpsertStore
    ) -> None:
        build, created, _ = scheduler_parts
        await _add_user(store, 1)
        await _add_user(store, 2)

        report = await build().run_all()

        assert report.total_users == 2
        assert report.tokens_refreshed == 2
        assert report.successful == 2
        assert [o.token for o in created] == ["access-for-refresh-1", "access-for-refresh-2"]
        assert all(o.closed for o in created)
        assert store.users[1]["refresh_token"] == "refresh-1-next"
        assert store.users[2]["access_token"] == "access-for-refresh-2"

    @pytest.mark.asyncio
    async def test_refresh_failure_skips_only_that_user(
        self, scheduler_parts, store: InMemoryUpsertStore
    ) -> None:
        build, created, _ = scheduler_parts
        await _add_user(store, 1)
        await _add_user(store, 2)

        report = await build({"refresh-1"}).run_all()

        assert report.token_failures == 1
        assert [r.status for r in report.results] == ["error", "success"]
        assert len(created) == 1
        assert store.users[1]["refresh_token"] == "refresh-1"
        assert report.errors[0].startswith("User 1: token refresh failed")

    @pytest.mark.asyncio
    async def test_token_persistence_failure_skips_only_that_user(
        self, scheduler_parts, store: InMemoryUpsertStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        build, created, _ = scheduler_parts
        await _add_user(store, 1)
        await _add_user(store, 2)
        save_tokens = store.update_user_tokens

        async def flaky_save(user_id: int, tokens: OAuthTokens) -> None:
            if user_id == 1:
                raise PersistenceError("whoop_users 1: connection reset")
            await save_tokens(user_id, tokens)

        monkeypatch.setattr(store, "update_user_tokens", flaky_save)

        report = await build().run_all()

        assert [r.status for r in report.results] == ["error", "success"]
        assert report.token_failures == 1
        assert [o.token for o in created] == ["access-for-refresh-2"]
        assert "connection reset" in report.errors[0]

    @pytest.mark.asyncio
    async def test_sync_failure_isolated(
        self, scheduler_parts, store: InMemoryUpsertStore
    ) -> None:
        build, created, failing_tokens = scheduler_parts
        failing_tokens.add("access-for-refresh-1")
        await _add_user(store, 1)
        await _add_user(store, 2)

        report = await build().run_all()

        assert report.successful == 1
        assert report.failed == 1
        assert report.results[0].error == "API unavailable"
        assert created[1].closed
        body = report.to_dict()
        assert body["token_refresh"] == {"refreshed": 2, "failed": 0}

    @pytest.mark.asyncio
    async def test_pauses_between_users(
        self,
        scheduler_parts,
        store: InMemoryUpsertStore,
        sync_config: SyncConfig,
        clock: FakeClock,
    ) -> None:
        build, _, _ = scheduler_parts
        await _add_user(store, 1)
        await _add_user(store, 2)
        await build().run_all()
        assert clock.sleeps == [0.1, sync_config.sync.user_delay_ms / 1000.0]
