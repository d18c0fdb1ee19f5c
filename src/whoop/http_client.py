"""Rate-limited, retrying HTTP client for the WHOOP v2 API.

Every outbound call in a sync run goes through one ``RateLimitedHttpClient``
instance so the throttle is global across concurrent callers:

- a minimum interval between consecutive calls (700 ms ≈ 85 req/min),
- a rolling 24 h request counter that widens the interval near the daily cap,
- exponential backoff (1 s, 2 s, 4 s) on HTTP 429 and on transport failures,
- immediate failure on any other non-2xx status.

Usage::

    async with RateLimitedHttpClient(token_provider) as http:
        profile = await http.request("/user/profile/basic")
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from src.whoop.auth import TokenProvider
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import ApiError, RateLimitError, TransportError

logger = logging.getLogger("whoopsync.whoop.http")

_DAY_SECONDS = 24 * 60 * 60


class RateLimitedHttpClient:
    """Authenticated GET client with a shared throttle and bounded retries."""

    def __init__(
        self,
        token_provider: TokenProvider,
        config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            token_provider: Supplies a valid bearer token per request.
            config:         Pipeline config (defaults to sync_config.yaml).
            http_client:    Optional pre-configured httpx client (for testing).
            clock:          Monotonic clock in seconds.
            sleep:          Async sleep used for throttling and backoff.
        """
        self._config = config or get_sync_config()
        self._token_provider = token_provider
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._min_interval = self._config.rate_limit.min_interval_s
        self._daily_reset_at = clock() + _DAY_SECONDS
        self.request_count = 0
        self.daily_request_count = 0

    async def __aenter__(self) -> "RateLimitedHttpClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def min_interval(self) -> float:
        """Current minimum spacing between calls, in seconds."""
        return self._min_interval

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request(self, endpoint: str, params: dict[str, Any] | None = None) -> dict:
        """GET ``endpoint`` (relative to the API base) and return decoded JSON.

        Raises:
            RateLimitError: HTTP 429 persisted through every retry.
            ApiError:       Any other non-2xx response (not retried).
            TransportError: Network/decoding failure persisted through every retry.
        """
        url = f"{self._config.api.base_url}{endpoint}"
        retry = self._config.retry
        attempt = 0

        while True:
            await self._wait_for_rate_limit()
            token = await self._token_provider.get_valid_token()
            logger.debug("API call: %s params=%s", url, params)

            try:
                response = await self._client().get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                    timeout=self._config.api.timeout_seconds,
                )
            except httpx.TransportError as exc:
                if attempt < retry.max_retries:
                    delay = retry.backoff_s(attempt)
                    logger.warning(
                        "Network error on %s (%s). Retrying in %.1fs...", endpoint, exc, delay
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise TransportError(
                    f"Network failure on {endpoint} after {attempt + 1} attempts: {exc}"
                ) from exc

            if response.status_code == 429:
                if attempt < retry.max_retries:
                    delay = retry.backoff_s(attempt)
                    logger.warning("Rate limited on %s. Retrying in %.1fs...", endpoint, delay)
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise RateLimitError(response.text, endpoint)

            if not response.is_success:
                logger.error("API error for %s: %s - %s", endpoint, response.status_code, response.text[:200])
                raise ApiError(response.status_code, response.text, endpoint)

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                # Truncated bodies on large pages decode as invalid JSON.
                if attempt < retry.max_retries:
                    delay = retry.backoff_s(attempt)
                    logger.warning(
                        "Unparseable response from %s. Retrying in %.1fs...", endpoint, delay
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise TransportError(f"Invalid JSON from {endpoint}: {exc}") from exc

    # ------------------------------------------------------------------
    # Throttle
    # ------------------------------------------------------------------

    async def _wait_for_rate_limit(self) -> None:
        """Delay the caller until the minimum interval has elapsed.

        Held under a lock so concurrent callers are spaced against each other.
        """
        rl = self._config.rate_limit
        async with self._lock:
            now = self._clock()

            if now >= self._daily_reset_at:
                self.daily_request_count = 0
                self._daily_reset_at = now + _DAY_SECONDS
                self._min_interval = rl.min_interval_s
                logger.info("Daily rate limit counter reset")

            if self.daily_request_count >= rl.daily_threshold and self._min_interval < rl.throttled_interval_s:
                logger.warning(
                    "Approaching daily rate limit (%d/%d), slowing requests to %dms",
                    self.daily_request_count, rl.daily_cap, rl.throttled_interval_ms,
                )
                self._min_interval = rl.throttled_interval_s

            if self._last_request_at is not None:
                elapsed = now - self._last_request_at
                if elapsed < self._min_interval:
                    await self._sleep(self._min_interval - elapsed)

            self._last_request_at = self._clock()
            self.request_count += 1
            self.daily_request_count += 1

            if self.request_count % rl.progress_log_every == 0:
                logger.info(
                    "API progress: %d requests made, %d today",
                    self.request_count, self.daily_request_count,
                )

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._config.api.timeout_seconds)
        return self._http_client
