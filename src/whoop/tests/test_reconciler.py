"""Tests for missing-cycle reconciliation and the sleep → cycle backfill."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.whoop.base import Recovery, SleepSession
from src.whoop.client import WhoopClient
from src.whoop.config_loader import SyncConfig
from src.whoop.errors import TransportError
from src.whoop.sync.reconciler import RelationshipReconciler, missing_cycle_ids
from src.whoop.sync.store import InMemoryUpsertStore
from src.whoop.tests.conftest import FakeClock, FakeWhoopApi, make_cycle, make_recovery, make_sleep


@pytest.fixture
def reconciler(
    whoop_client: WhoopClient,
    store: InMemoryUpsertStore,
    sync_config: SyncConfig,
    clock: FakeClock,
) -> RelationshipReconciler:
    return RelationshipReconciler(whoop_client, store, sync_config, sleep=clock.sleep)


def _recoveries(*pairs: tuple[int, str | None]) -> list[Recovery]:
    return [Recovery.from_api(make_recovery(cid, sid)) for cid, sid in pairs]


class TestMissingCycleIds:
    def test_distinct_and_ordered(self) -> None:
        recoveries = _recoveries((3, "a"), (1, "b"), (3, "c"), (2, None))
        assert missing_cycle_ids(recoveries, {2}) == [3, 1]

    def test_nothing_missing(self) -> None:
        assert missing_cycle_ids(_recoveries((1, "a")), [1]) == []


class TestReconcile:
    @pytest.mark.asyncio
    async def test_fetches_missing_cycles(
        self, reconciler: RelationshipReconciler, fake_api: FakeWhoopApi
    ) -> None:
        fake_api.cycles_by_id[12] = make_cycle(12)
        result = await reconciler.reconcile(_recoveries((11, "a"), (12, "b")), {11})
        assert result.missing_ids == (12,)
        assert [c.id for c in result.fetched] == [12]
        assert result.errors == ()
        assert len(fake_api.calls_to("/cycle/12")) == 1

    @pytest.mark.asyncio
    async def test_every_recovery_cycle_accounted_for(
        self, reconciler: RelationshipReconciler, fake_api: FakeWhoopApi
    ) -> None:
        fake_api.cycles_by_id[21] = make_cycle(21)
        fake_api.cycles_by_id[22] = make_cycle(22, end=False)
        recoveries = _recoveries((20, "a"), (21, "b"), (22, "c"), (23, "d"))
        result = await reconciler.reconcile(recoveries, {20})
        assert result.resolved_ids == {21}
        assert result.deferred == (22,)
        assert result.gaps == (23,)
        accounted = {20} | result.resolved_ids | set(result.deferred) | set(result.gaps)
        assert accounted == {r.cycle_id for r in recoveries}

    @pytest.mark.asyncio
    async def test_not_found_fails_without_retry(
        self, reconciler: RelationshipReconciler, fake_api: FakeWhoopApi
    ) -> None:
        result = await reconciler.reconcile(_recoveries((404, "a")), set())
        assert result.gaps == (404,)
        assert result.errors[0].startswith("Cycle 404: Failed after 1 attempts")
        assert len(fake_api.calls_to("/cycle/404")) == 1

    @pytest.mark.asyncio
    async def test_malformed_cycle_is_a_gap_not_a_crash(
        self, reconciler: RelationshipReconciler, fake_api: FakeWhoopApi
    ) -> None:
        fake_api.cycles_by_id[12] = make_cycle(12)
        fake_api.cycles_by_id[13] = {"score_state": "SCORED"}

        result = await reconciler.reconcile(_recoveries((12, "a"), (13, "b")), set())

        assert [c.id for c in result.fetched] == [12]
        assert result.gaps == (13,)
        assert result.errors[0].startswith("Cycle 13: Failed after 1 attempts")
        assert len(fake_api.calls_to("/cycle/13")) == 1

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_backoff(
        self, store: InMemoryUpsertStore, sync_config: SyncConfig, clock: FakeClock
    ) -> None:
        client = AsyncMock(spec=WhoopClient)
        client.get_cycle.side_effect = TransportError("connection reset")
        reconciler = RelationshipReconciler(client, store, sync_config, sleep=clock.sleep)

        result = await reconciler.reconcile(_recoveries((5, "a")), set())

        assert client.get_cycle.await_count == sync_config.reconcile.max_attempts
        assert clock.sleeps == [1.0, 2.0]
        assert result.errors == ("Cycle 5: Failed after 3 attempts (connection reset)",)

    @pytest.mark.asyncio
    async def test_nothing_missing_makes_no_calls(
        self, reconciler: RelationshipReconciler, fake_api: FakeWhoopApi
    ) -> None:
        result = await reconciler.reconcile(_recoveries((1, "a")), {1})
        assert result.missing_ids == ()
        assert fake_api.requests == []


class TestApplyBackfill:
    @pytest.mark.asyncio
    async def test_links_sleep_to_recovery_cycle(
        self, reconciler: RelationshipReconciler, store: InMemoryUpsertStore
    ) -> None:
        for sid in ("s1", "s2"):
            await store.upsert_sleep(SleepSession.from_api(make_sleep(sid)))
        result = await reconciler.apply_backfill(_recoveries((1, "s1"), (2, "s2"), (3, None)))
        assert result.linked == 2
        assert store.sleep["s1"]["cycle_id"] == 1
        assert store.sleep["s2"]["cycle_id"] == 2

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(
        self, reconciler: RelationshipReconciler, store: InMemoryUpsertStore
    ) -> None:
        await store.upsert_sleep(SleepSession.from_api(make_sleep("s1")))
        recoveries = _recoveries((1, "s1"))
        await reconciler.apply_backfill(recoveries)
        result = await reconciler.apply_backfill(recoveries)
        assert result.linked == 0
        assert result.unchanged == 1

    @pytest.mark.asyncio
    async def test_batches_of_configured_size(
        self, reconciler: RelationshipReconciler, sync_config: SyncConfig
    ) -> None:
        count = sync_config.reconcile.batch_size + 1
        recoveries = _recoveries(*[(i, f"s{i}") for i in range(count)])
        result = await reconciler.apply_backfill(recoveries)
        assert result.batches == 2

    @pytest.mark.asyncio
    async def test_failures_collected_and_batch_continues(
        self, whoop_client: WhoopClient, sync_config: SyncConfig
    ) -> None:
        store = AsyncMock(spec=InMemoryUpsertStore)
        store.link_sleep_to_cycle.side_effect = [RuntimeError("deadlock"), True]
        reconciler = RelationshipReconciler(whoop_client, store, sync_config)

        result = await reconciler.apply_backfill(_recoveries((1, "s1"), (2, "s2")))

        assert result.linked == 1
        assert result.errors == ("Failed to link sleep s1 to cycle 1: deadlock",)
