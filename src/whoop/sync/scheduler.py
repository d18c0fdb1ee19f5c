"""Daily WHOOP sync across every connected user.

Run by the cron endpoint once a day:
1. List users with a stored refresh token
2. Force-refresh each user's OAuth tokens (persisting the new pair)
3. Run a daily ``SyncOrchestrator`` per user, one user at a time
4. Report per-user outcomes; one user's failure never stops the others
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from src.whoop.auth import RefreshingTokenProvider, TokenProvider
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import TokenError
from src.whoop.sync.orchestrator import SyncMode, SyncOrchestrator, SyncSummary
from src.whoop.sync.store import StoredUser, UpsertStore

logger = logging.getLogger("whoopsync.whoop.sync.scheduler")

# Pause between token refresh calls
_REFRESH_DELAY_S = 0.1


@dataclass(frozen=True)
class UserSyncResult:
    """Result of the daily sync for one user.

    Attributes:
        user_id: WHOOP user id.
        status:  'success' or 'error'.
        summary: Run summary when the sync completed.
        error:   Error message if status == 'error'.
    """

    user_id: int
    status: str
    summary: SyncSummary | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "summary": self.summary.to_dict() if self.summary else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class ScheduleReport:
    total_users: int
    tokens_refreshed: int
    token_failures: int
    results: tuple[UserSyncResult, ...] = ()
    errors: tuple[str, ...] = ()
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "error")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_users": self.total_users,
            "successful": self.successful,
            "failed": self.failed,
            "token_refresh": {
                "refreshed": self.tokens_refreshed,
                "failed": self.token_failures,
            },
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "finished_at": self.finished_at.isoformat(),
        }


OrchestratorFactory = Callable[[TokenProvider], SyncOrchestrator]


class DailySyncScheduler:
    """Refresh tokens and sync every connected user.

    Usage::

        scheduler = DailySyncScheduler(PostgresUpsertStore())
        report = await scheduler.run_all()
    """

    def __init__(
        self,
        store: UpsertStore,
        config: SyncConfig | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store:                Token source and sync destination.
            config:               Pipeline config (defaults to sync_config.yaml).
            client_id:            OAuth2 client ID for token refresh.
            client_secret:        OAuth2 client secret for token refresh.
            orchestrator_factory: Builds the per-user orchestrator (for testing).
            http_client:          httpx client used for token refresh (for testing).
            sleep:                Async sleep used between users.
        """
        self._store = store
        self._config = config or get_sync_config()
        self._client_id = client_id
        self._client_secret = client_secret
        self._factory = orchestrator_factory or (
            lambda provider: SyncOrchestrator(provider, store, self._config)
        )
        self._http_client = http_client
        self._sleep = sleep

    def _provider_for(self, user: StoredUser) -> RefreshingTokenProvider:
        async def _persist(tokens) -> None:
            await self._store.update_user_tokens(user.user_id, tokens)

        return RefreshingTokenProvider(
            user.tokens,
            client_id=self._client_id,
            client_secret=self._client_secret,
            on_refresh=_persist,
            http_client=self._http_client,
            config=self._config,
        )

    async def run_all(self) -> ScheduleReport:
        """Sync every user with stored tokens.

        Raises:
            TokenError: No user has stored tokens.
        """
        users = await self._store.list_users_with_tokens()
        if not users:
            raise TokenError("No users with WHOOP tokens found; authenticate at least one user first")

        logger.info("Daily sync: %d users with tokens", len(users))
        errors: list[str] = []

        # Phase 1: refresh every token up front
        providers: dict[int, RefreshingTokenProvider] = {}
        token_failures = 0
        for index, user in enumerate(users):
            provider = self._provider_for(user)
            try:
                await provider.force_refresh()
                providers[user.user_id] = provider
            except Exception as exc:
                token_failures += 1
                msg = f"User {user.user_id}: token refresh failed: {exc}"
                logger.warning("%s", msg)
                errors.append(msg)
            if index < len(users) - 1:
                await self._sleep(_REFRESH_DELAY_S)

        logger.info(
            "Token refresh: %d refreshed, %d failed", len(providers), token_failures
        )

        # Phase 2: sync users one by one
        results: list[UserSyncResult] = []
        user_delay = self._config.sync.user_delay_ms / 1000.0
        for index, user in enumerate(users):
            provider = providers.get(user.user_id)
            if provider is None:
                results.append(
                    UserSyncResult(user.user_id, "error", error="Token refresh failed")
                )
                continue

            try:
                async with self._factory(provider) as orchestrator:
                    summary = await orchestrator.run(SyncMode.DAILY)
                results.append(UserSyncResult(user.user_id, "success", summary=summary))
                errors.extend(f"User {user.user_id}: {e}" for e in summary.errors)
            except Exception as exc:
                msg = f"User {user.user_id}: {exc}"
                logger.error("Daily sync failed for user %s: %s", user.user_id, exc)
                errors.append(msg)
                results.append(UserSyncResult(user.user_id, "error", error=str(exc)))

            if index < len(users) - 1:
                await self._sleep(user_delay)

        report = ScheduleReport(
            total_users=len(users),
            tokens_refreshed=len(providers),
            token_failures=token_failures,
            results=tuple(results),
            errors=tuple(errors),
        )
        logger.info(
            "Daily sync complete: %d/%d users succeeded",
            report.successful, report.total_users,
        )
        return report
