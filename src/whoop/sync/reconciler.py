"""Cross-reference repair between independently fetched WHOOP collections.

Recovery is the only record that names both its cycle and its sleep, so it
drives two repairs:

1. ``reconcile``     — cycles referenced by a recovery but absent from the
                       paginated cycle fetch are fetched one by one.
2. ``apply_backfill`` — each stored sleep is pointed at the cycle its
                       recovery names, in batches.

Both collect failures instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from src.whoop.base import Cycle, Recovery
from src.whoop.client import WhoopClient
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import ApiError, ReconciliationGapError, WhoopError
from src.whoop.sync.store import UpsertStore

logger = logging.getLogger("whoopsync.whoop.sync.reconciler")


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of the missing-cycle repair.

    Attributes:
        missing_ids: Cycle ids referenced by recoveries but not fetched.
        fetched:     Completed cycles recovered by individual fetches.
        deferred:    Ids whose cycle is still in progress (not stored this run).
        gaps:        Ids that could not be fetched after every attempt.
        errors:      One message per gap.
    """

    missing_ids: tuple[int, ...] = ()
    fetched: tuple[Cycle, ...] = ()
    deferred: tuple[int, ...] = ()
    gaps: tuple[int, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def resolved_ids(self) -> set[int]:
        return {c.id for c in self.fetched}


@dataclass(frozen=True)
class BackfillResult:
    """Outcome of the sleep → cycle link backfill."""

    linked: int = 0
    unchanged: int = 0
    batches: int = 0
    errors: tuple[str, ...] = ()


def missing_cycle_ids(recoveries: Iterable[Recovery], known_cycle_ids: Iterable[int]) -> list[int]:
    """Distinct cycle ids named by ``recoveries`` that are not in ``known_cycle_ids``."""
    known = set(known_cycle_ids)
    missing: list[int] = []
    for recovery in recoveries:
        if recovery.cycle_id not in known:
            known.add(recovery.cycle_id)
            missing.append(recovery.cycle_id)
    return missing


class RelationshipReconciler:
    """Repair cycle/sleep references using the recovery set.

    Usage::

        reconciler = RelationshipReconciler(client, store)
        result = await reconciler.reconcile(recoveries, {c.id for c in cycles})
        backfill = await reconciler.apply_backfill(recoveries)
    """

    def __init__(
        self,
        client: WhoopClient,
        store: UpsertStore,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config or get_sync_config()
        self._sleep = sleep

    async def reconcile(
        self, recoveries: Sequence[Recovery], known_cycle_ids: Iterable[int]
    ) -> ReconcileResult:
        missing = missing_cycle_ids(recoveries, known_cycle_ids)
        if not missing:
            logger.info("All cycles referenced by recoveries are present")
            return ReconcileResult()

        logger.info("Fetching %d missing cycles individually", len(missing))
        semaphore = asyncio.Semaphore(self._config.reconcile.concurrency)

        async def _bounded(cycle_id: int) -> Cycle | ReconciliationGapError:
            async with semaphore:
                return await self._fetch_cycle(cycle_id)

        outcomes = await asyncio.gather(*(_bounded(cid) for cid in missing))

        fetched: list[Cycle] = []
        deferred: list[int] = []
        gaps: list[int] = []
        errors: list[str] = []
        for cycle_id, outcome in zip(missing, outcomes):
            if isinstance(outcome, ReconciliationGapError):
                gaps.append(cycle_id)
                errors.append(str(outcome))
            elif not outcome.is_complete:
                logger.info("Cycle %s is still in progress; its recovery waits for the next run", cycle_id)
                deferred.append(cycle_id)
            else:
                fetched.append(outcome)

        logger.info(
            "Reconciled %d missing cycles: %d fetched, %d in progress, %d failed",
            len(missing), len(fetched), len(deferred), len(gaps),
        )
        return ReconcileResult(
            missing_ids=tuple(missing),
            fetched=tuple(fetched),
            deferred=tuple(deferred),
            gaps=tuple(gaps),
            errors=tuple(errors),
        )

    async def _fetch_cycle(self, cycle_id: int) -> Cycle | ReconciliationGapError:
        cfg = self._config.reconcile
        last_exc: Exception | None = None

        for attempt in range(cfg.max_attempts):
            try:
                return await self._client.get_cycle(cycle_id)
            except WhoopError as exc:
                last_exc = exc
                if isinstance(exc, ApiError) and 400 <= exc.status < 500 and exc.status != 429:
                    break
                if attempt < cfg.max_attempts - 1:
                    delay = (2 ** attempt) * cfg.base_delay_ms / 1000.0
                    logger.warning(
                        "Cycle %s fetch failed (attempt %d/%d): %s. Retrying in %.1fs",
                        cycle_id, attempt + 1, cfg.max_attempts, exc, delay,
                    )
                    await self._sleep(delay)
            except (KeyError, TypeError, ValueError) as exc:
                # malformed body; a retry returns the same payload
                last_exc = exc
                break

        attempts = attempt + 1
        gap = ReconciliationGapError(cycle_id, attempts, last_exc)
        logger.error("%s", gap)
        return gap

    async def apply_backfill(self, recoveries: Sequence[Recovery]) -> BackfillResult:
        """Link stored sleeps to the cycle named by their recovery."""
        pairs = [(r.sleep_id, r.cycle_id) for r in recoveries if r.sleep_id and r.cycle_id]
        batch_size = self._config.reconcile.batch_size

        linked = 0
        unchanged = 0
        batches = 0
        errors: list[str] = []

        for offset in range(0, len(pairs), batch_size):
            batch = pairs[offset:offset + batch_size]
            batches += 1
            for sleep_id, cycle_id in batch:
                try:
                    if await self._store.link_sleep_to_cycle(sleep_id, cycle_id):
                        linked += 1
                    else:
                        unchanged += 1
                except Exception as exc:
                    msg = f"Failed to link sleep {sleep_id} to cycle {cycle_id}: {exc}"
                    logger.warning("%s", msg)
                    errors.append(msg)
            logger.debug("Backfill batch %d: %d pairs", batches, len(batch))

        logger.info(
            "Sleep-cycle backfill: %d linked, %d already correct, %d errors",
            linked, unchanged, len(errors),
        )
        return BackfillResult(
            linked=linked, unchanged=unchanged, batches=batches, errors=tuple(errors)
        )
