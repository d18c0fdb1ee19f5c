"""Bearer-token providers for the WHOOP API.

The sync core never reads session state directly: it is handed a
``TokenProvider`` and asks it for a valid token before each request.

- ``StaticTokenProvider``     — a token the caller already holds (on-demand sync).
- ``RefreshingTokenProvider`` — stored OAuth tokens, refreshed through the WHOOP
  token endpoint when they are about to expire (cron sync).
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol

import httpx

from src.whoop.base import OAuthTokens
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import TokenError

logger = logging.getLogger("whoopsync.whoop.auth")

# Subtracted from expires_in so a stored token is never used right at its edge.
_EXPIRY_SAFETY_SECONDS = 300


class TokenProvider(Protocol):
    async def get_valid_token(self) -> str:
        """Return a bearer token that is valid right now."""
        ...


class StaticTokenProvider:
    """Wrap a token obtained elsewhere (e.g. the caller's OAuth session)."""

    def __init__(self, access_token: str) -> None:
        if not access_token:
            raise TokenError("No access token available")
        self._access_token = access_token

    async def get_valid_token(self) -> str:
        return self._access_token


class RefreshingTokenProvider:
    """Hold OAuth tokens and refresh them on expiry.

    Usage::

        provider = RefreshingTokenProvider(
            tokens,
            on_refresh=lambda t: store.update_user_tokens(user_id, t),
        )
        token = await provider.get_valid_token()
    """

    def __init__(
        self,
        tokens: OAuthTokens,
        client_id: str | None = None,
        client_secret: str | None = None,
        on_refresh: Callable[[OAuthTokens], Awaitable[None]] | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            tokens:        Current access/refresh token pair.
            client_id:     OAuth2 client ID (WHOOP_CLIENT_ID env var).
            client_secret: OAuth2 client secret (WHOOP_CLIENT_SECRET env var).
            on_refresh:    Async callback to persist newly issued tokens.
            http_client:   Optional pre-configured httpx client (for testing).
            config:        Pipeline config (defaults to sync_config.yaml).
        """
        self._tokens = tokens
        self._client_id = client_id or os.environ.get("WHOOP_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("WHOOP_CLIENT_SECRET", "")
        self._on_refresh = on_refresh
        self._http_client = http_client
        self._config = config or get_sync_config()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> OAuthTokens:
        return self._tokens

    def needs_refresh(self, buffer_seconds: int | None = None) -> bool:
        """Return True if the access token is missing or expires within the buffer."""
        if buffer_seconds is None:
            buffer_seconds = self._config.sync.token_refresh_buffer_seconds
        if not self._tokens.access_token:
            return True
        if self._tokens.expires_at is None:
            return False
        remaining = (self._tokens.expires_at - datetime.now(timezone.utc)).total_seconds()
        return remaining < buffer_seconds

    async def get_valid_token(self) -> str:
        async with self._lock:
            if self.needs_refresh():
                await self._refresh()
            return self._tokens.access_token

    async def force_refresh(self) -> OAuthTokens:
        """Refresh regardless of expiry (the daily cron does this for every user)."""
        async with self._lock:
            await self._refresh()
            return self._tokens

    async def _refresh(self) -> None:
        if not self._tokens.refresh_token:
            raise TokenError("Access token expired and no refresh token is stored")
        if not self._client_id or not self._client_secret:
            raise TokenError("WHOOP_CLIENT_ID and WHOOP_CLIENT_SECRET must be set")

        logger.info("Refreshing WHOOP access token")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._tokens.refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": " ".join(self._config.api.scopes),
        }
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

        try:
            if self._http_client:
                response = await self._http_client.post(
                    self._config.api.token_url, data=data, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._config.api.timeout_seconds) as client:
                    response = await client.post(
                        self._config.api.token_url, data=data, headers=headers
                    )
        except httpx.HTTPError as exc:
            raise TokenError(f"Token refresh failed: {exc}") from exc

        if not response.is_success:
            raise TokenError(
                f"Token refresh failed: {response.status_code} - {response.text[:200]}"
            )

        try:
            payload = response.json()
            expires_in = int(payload.get("expires_in", 3600))
            tokens = OAuthTokens(
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token", self._tokens.refresh_token),
                expires_at=datetime.now(timezone.utc)
                + timedelta(seconds=max(expires_in - _EXPIRY_SAFETY_SECONDS, 0)),
                token_type=payload.get("token_type", "Bearer"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise TokenError(f"Malformed token response: {exc!r}") from exc
        self._tokens = tokens
        logger.info("Token refreshed; valid until %s", self._tokens.expires_at.isoformat())

        if self._on_refresh:
            await self._on_refresh(self._tokens)
