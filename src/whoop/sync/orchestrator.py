"""One WHOOP sync run for one user.

Runs a fixed sequence of steps and threads each step's result into the next:

    1. profile      → upsert user                     (fatal on failure)
    2. recovery     → fetch for the window            (fatal on failure)
    3. cycles       → fetch + upsert
    4. reconcile    → fetch cycles recoveries name but step 3 missed; upsert
    5. sleep        → fetch + upsert (no cycle link yet)
    6. backfill     → link sleep → cycle from the recovery set
    7. recovery     → upsert
    8. workouts     → fetch + upsert
    9. summary

Steps 3–8 never abort the run; their failures are appended to
``SyncSummary.errors`` and the next step runs.

Usage::

    orchestrator = SyncOrchestrator(StaticTokenProvider(token), store)
    summary = await orchestrator.run(SyncMode.DAILY)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from src.whoop.auth import TokenProvider
from src.whoop.base import Cycle, Record, Recovery, ResourceKind, WhoopProfile
from src.whoop.client import WhoopClient
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import SyncAbortedError
from src.whoop.sync.reconciler import BackfillResult, ReconcileResult, RelationshipReconciler
from src.whoop.sync.store import UpsertResult, UpsertStore

logger = logging.getLogger("whoopsync.whoop.sync.orchestrator")

T = TypeVar("T")


class SyncMode(str, Enum):
    DAILY = "daily"              # overlap window of the last few days
    HISTORICAL = "historical"    # everything the API has


@dataclass(frozen=True)
class SyncSummary:
    """Immutable result of one sync run."""

    user_id: int
    mode: SyncMode
    window_start: datetime | None
    window_end: datetime
    counts: dict[str, int]
    errors: tuple[str, ...] = ()
    reconciled_cycles: int = 0
    linked_sleeps: int = 0
    skipped_scored: int = 0
    duration_seconds: float = 0.0
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "mode": self.mode.value,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat(),
            "counts": dict(self.counts),
            "total_records": self.total_records,
            "reconciled_cycles": self.reconciled_cycles,
            "linked_sleeps": self.linked_sleeps,
            "skipped_scored": self.skipped_scored,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 2),
            "completed_at": self.completed_at.isoformat(),
        }


class SyncOrchestrator:
    """Drive one user's sync from the WHOOP API into an ``UpsertStore``."""

    def __init__(
        self,
        token_provider: TokenProvider,
        store: UpsertStore,
        config: SyncConfig | None = None,
        client: WhoopClient | None = None,
        reconciler: RelationshipReconciler | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """Initialize the orchestrator.

        Args:
            token_provider: Supplies the user's bearer token.
            store:          Destination for every record.
            config:         Pipeline config (defaults to sync_config.yaml).
            client:         Pre-built API client (for testing); built from
                            ``token_provider`` when omitted.
            reconciler:     Pre-built reconciler (for testing).
            now:            UTC clock used to compute the sync window.
        """
        self._config = config or get_sync_config()
        self._owns_client = client is None
        self._client = client or WhoopClient(token_provider, self._config)
        self._store = store
        self._reconciler = reconciler or RelationshipReconciler(
            self._client, store, self._config
        )
        self._now = now

    async def __aenter__(self) -> "SyncOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.http.aclose()

    def window(self, mode: SyncMode) -> tuple[datetime | None, datetime]:
        """Return ``(start, end)`` for ``mode``; start None means unbounded."""
        end = self._now()
        if SyncMode(mode) is SyncMode.HISTORICAL:
            return None, end
        return end - timedelta(days=self._config.sync.daily_window_days), end

    async def run(self, mode: SyncMode | str = SyncMode.DAILY) -> SyncSummary:
        """Execute every step in order and return the run summary.

        Raises:
            SyncAbortedError: The profile or recovery fetch failed.
        """
        mode = SyncMode(mode)
        started = time.monotonic()
        start, end = self.window(mode)
        errors: list[str] = []
        logger.info(
            "Starting %s WHOOP sync (window %s → %s)",
            mode.value, start.isoformat() if start else "beginning", end.isoformat(),
        )

        # 1. Profile
        try:
            profile: WhoopProfile = await self._client.get_profile()
            await self._store.upsert_user(profile)
        except Exception as exc:
            logger.error("Profile step failed: %s", exc)
            raise SyncAbortedError("profile", exc, errors) from exc
        logger.info("Syncing WHOOP data for %s (user %s)", profile.display_name, profile.user_id)

        # 2. Recovery fetch: the cross-reference source for steps 4, 6 and 7
        try:
            recoveries: list[Recovery] = await self._client.get_all(
                ResourceKind.RECOVERY, start=start, end=end
            )
        except Exception as exc:
            logger.error("Recovery fetch failed: %s", exc)
            raise SyncAbortedError("recovery", exc, errors) from exc
        logger.info("Fetched %d recoveries", len(recoveries))

        # 3. Cycles
        cycles: list[Cycle] = await self._fetch(ResourceKind.CYCLE, start, end, errors)
        cycle_result = await self._upsert(ResourceKind.CYCLE, cycles, errors)

        # 4. Missing cycles
        reconcile_result = await self._guarded(
            "reconcile",
            errors,
            lambda: self._reconciler.reconcile(recoveries, {c.id for c in cycles}),
            ReconcileResult(),
        )
        errors.extend(reconcile_result.errors)
        reconciled_upsert = await self._upsert(
            ResourceKind.CYCLE, reconcile_result.fetched, errors
        )

        # 5. Sleep
        sleeps = await self._fetch(ResourceKind.SLEEP, start, end, errors)
        sleep_result = await self._upsert(ResourceKind.SLEEP, sleeps, errors)

        # 6. Sleep → cycle links
        backfill_result = await self._guarded(
            "backfill",
            errors,
            lambda: self._reconciler.apply_backfill(recoveries),
            BackfillResult(),
        )
        errors.extend(backfill_result.errors)

        # 7. Recovery upsert, minus recoveries whose cycle is not stored
        anchored = {c.id for c in cycles} | reconcile_result.resolved_ids
        writable = [r for r in recoveries if r.cycle_id in anchored]
        if len(writable) < len(recoveries):
            logger.info(
                "Holding back %d recoveries whose cycle is unavailable this run",
                len(recoveries) - len(writable),
            )
        recovery_result = await self._upsert(ResourceKind.RECOVERY, writable, errors)

        # 8. Workouts
        workouts = await self._fetch(ResourceKind.WORKOUT, start, end, errors)
        workout_result = await self._upsert(ResourceKind.WORKOUT, workouts, errors)

        # 9. Summary
        summary = SyncSummary(
            user_id=profile.user_id,
            mode=mode,
            window_start=start,
            window_end=end,
            counts={
                ResourceKind.CYCLE.value: cycle_result.written + reconciled_upsert.written,
                ResourceKind.SLEEP.value: sleep_result.written,
                ResourceKind.RECOVERY.value: recovery_result.written,
                ResourceKind.WORKOUT.value: workout_result.written,
            },
            errors=tuple(errors),
            reconciled_cycles=reconciled_upsert.written,
            linked_sleeps=backfill_result.linked,
            skipped_scored=sum(
                r.skipped for r in (
                    cycle_result, reconciled_upsert, sleep_result, recovery_result, workout_result,
                )
            ),
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "WHOOP sync complete for user %s: %s (%d errors, %.1fs)",
            summary.user_id, summary.counts, len(summary.errors), summary.duration_seconds,
        )
        return summary

    # ------------------------------------------------------------------
    # Step helpers
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        kind: ResourceKind,
        start: datetime | None,
        end: datetime,
        errors: list[str],
    ) -> list[Record]:
        return await self._guarded(
            f"{kind.value} fetch",
            errors,
            lambda: self._client.get_all(kind, start=start, end=end),
            [],
        )

    async def _upsert(
        self, kind: ResourceKind, records: Sequence[Record], errors: list[str]
    ) -> UpsertResult:
        if not records:
            return UpsertResult(kind=kind)
        result = await self._guarded(
            f"{kind.value} upsert",
            errors,
            lambda: self._store.upsert_many(kind, records),
            UpsertResult(kind=kind),
        )
        errors.extend(result.errors)
        return result

    @staticmethod
    async def _guarded(
        step: str,
        errors: list[str],
        func: Callable[[], Awaitable[T]],
        default: T,
    ) -> T:
        try:
            return await func()
        except Exception as exc:
            logger.error("Step '%s' failed: %s", step, exc)
            errors.append(f"{step} failed: {exc}")
            return default
