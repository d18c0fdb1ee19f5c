"""Cursor pagination over the four WHOOP v2 collections.

``fetch_all`` walks a collection page by page (``limit`` 25, ``nextToken``
cursor) and returns a fully materialized, de-duplicated list of completed
records.  Hitting the page cap returns what was collected so far.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.whoop.base import Record, ResourceKind, parse_record, to_api_timestamp
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.http_client import RateLimitedHttpClient
from src.whoop.sync.dedup import InMemoryDedupCache

logger = logging.getLogger("whoopsync.whoop.paginator")

ENDPOINTS: dict[ResourceKind, str] = {
    ResourceKind.CYCLE: "/cycle",
    ResourceKind.SLEEP: "/activity/sleep",
    ResourceKind.RECOVERY: "/recovery",
    ResourceKind.WORKOUT: "/activity/workout",
}


class ResourcePaginator:
    def __init__(self, http: RateLimitedHttpClient, config: SyncConfig | None = None) -> None:
        self._http = http
        self._config = config or get_sync_config()

    async def fetch_all(
        self,
        kind: ResourceKind,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Record]:
        """Fetch every completed record of ``kind`` in ``[start, end]``.

        ``end`` defaults to now at call time; ``start`` None means unbounded.
        Errors from the HTTP client propagate; nothing is retried here.
        """
        kind = ResourceKind(kind)
        endpoint = ENDPOINTS[kind]
        end = end or datetime.now(timezone.utc)
        max_pages = self._config.pagination.max_pages

        base_params: dict[str, Any] = {
            "limit": self._config.api.page_limit,
            "end": to_api_timestamp(end),
        }
        if start is not None:
            base_params["start"] = to_api_timestamp(start)

        records: list[Record] = []
        seen = InMemoryDedupCache()
        skipped_incomplete = 0
        next_token: str | None = None
        page = 0

        while True:
            params = dict(base_params)
            if next_token:
                params["nextToken"] = next_token

            data = await self._http.request(endpoint, params)
            page += 1

            raw_records = data.get("records") or []
            for raw in raw_records:
                record = parse_record(kind, raw)
                if seen.is_seen(record.key):
                    logger.debug("Skipping duplicate %s record %s", kind.value, record.key)
                    continue
                seen.mark_seen(record.key)
                if not record.is_complete:
                    skipped_incomplete += 1
                    continue
                records.append(record)

            next_token = data.get("next_token") or None
            logger.debug(
                "%s page %d: %d records (total %d), next_token=%s",
                kind.value, page, len(raw_records), len(records), bool(next_token),
            )

            if not next_token:
                break
            if page >= max_pages:
                logger.warning(
                    "Reached max pages (%d) for %s; returning %d records collected so far",
                    max_pages, kind.value, len(records),
                )
                break

        if skipped_incomplete:
            logger.info("Skipped %d in-progress %s records", skipped_incomplete, kind.value)
        logger.info("Fetched %d %s records in %d pages", len(records), kind.value, page)
        return records
