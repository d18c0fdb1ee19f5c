"""High-level WHOOP v2 API facade used by the sync orchestrator.

Bundles the rate-limited HTTP client and the paginator behind the handful of
calls a sync run needs.
"""

from __future__ import annotations

import logging
from datetime import datetime

from src.whoop.auth import TokenProvider
from src.whoop.base import Cycle, Record, ResourceKind, WhoopProfile
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.http_client import RateLimitedHttpClient
from src.whoop.paginator import ResourcePaginator

logger = logging.getLogger("whoopsync.whoop.client")


class WhoopClient:
    """WHOOP v2 API client.

    Usage::

        async with WhoopClient(StaticTokenProvider(token)) as client:
            profile = await client.get_profile()
            cycles = await client.get_all(ResourceKind.CYCLE, start=since)
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        config: SyncConfig | None = None,
        http: RateLimitedHttpClient | None = None,
    ) -> None:
        self._config = config or get_sync_config()
        self.http = http or RateLimitedHttpClient(token_provider, self._config)
        self.paginator = ResourcePaginator(self.http, self._config)

    async def __aenter__(self) -> "WhoopClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.http.aclose()

    async def get_profile(self) -> WhoopProfile:
        data = await self.http.request("/user/profile/basic")
        return WhoopProfile.from_api(data)

    async def get_cycle(self, cycle_id: int) -> Cycle:
        data = await self.http.request(f"/cycle/{cycle_id}")
        return Cycle.from_api(data)

    async def get_all(
        self,
        kind: ResourceKind,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Record]:
        return await self.paginator.fetch_all(kind, start=start, end=end)
