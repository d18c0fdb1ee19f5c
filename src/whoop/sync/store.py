"""Idempotent persistence of WHOOP records.

``UpsertStore`` is the write side of a sync run.  Two implementations share
the same semantics:

- ``PostgresUpsertStore`` — asyncpg, ``INSERT ... ON CONFLICT`` per record.
- ``InMemoryUpsertStore`` — dict-backed, used by tests and local runs without Postgres.

Write rules common to both:
    - Keyed by natural WHOOP id (recovery keyed by cycle_id).
    - A non-SCORED record never replaces a row already stored as SCORED.
    - A recovery whose sleep is not stored yet is written with a NULL
      sleep_id and reported as a ``PersistenceRaceError`` message.
    - ``upsert_many`` writes record by record; one failure never aborts the batch.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

import asyncpg

from src.whoop.base import (
    Cycle,
    OAuthTokens,
    Record,
    Recovery,
    ResourceKind,
    ScoreState,
    SleepSession,
    WhoopProfile,
    Workout,
)
from src.whoop.errors import PersistenceError, PersistenceRaceError
from src.whoop.sync.dedup import build_upsert_query

logger = logging.getLogger("whoopsync.whoop.sync.store")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"      # stored row is SCORED, incoming is not
    RACE = "race"            # written with sleep_id NULL


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a bulk upsert for one resource kind."""

    kind: ResourceKind
    written: int = 0
    skipped: int = 0
    failed: int = 0
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class StoredUser:
    user_id: int
    email: str | None
    first_name: str | None
    last_name: str | None
    tokens: OAuthTokens


# ---------------------------------------------------------------------------
# Record → row mapping
# ---------------------------------------------------------------------------


def _score_columns(score: Any, names: Iterable[str]) -> dict[str, Any]:
    return {n: getattr(score, n) if score is not None else None for n in names}


def cycle_row(cycle: Cycle) -> dict[str, Any]:
    return {
        "id": cycle.id,
        "user_id": cycle.user_id,
        "start_time": cycle.start,
        "end_time": cycle.end,
        "timezone_offset": cycle.timezone_offset,
        "score_state": cycle.scoring.state.value,
        **_score_columns(cycle.score, ("strain", "kilojoule", "average_heart_rate", "max_heart_rate")),
    }


def sleep_row(sleep: SleepSession) -> dict[str, Any]:
    score = sleep.score
    stages = score.stage_summary if score is not None else None
    return {
        "id": sleep.id,
        "activity_v1_id": sleep.v1_id,
        "user_id": sleep.user_id,
        "cycle_id": sleep.cycle_id,
        "start_time": sleep.start,
        "end_time": sleep.end,
        "timezone_offset": sleep.timezone_offset,
        "nap": sleep.nap,
        "score_state": sleep.scoring.state.value,
        **_score_columns(score, (
            "sleep_performance_percentage",
            "sleep_consistency_percentage",
            "sleep_efficiency_percentage",
            "respiratory_rate",
        )),
        **_score_columns(stages, (
            "total_in_bed_time_milli",
            "total_awake_time_milli",
            "total_light_sleep_time_milli",
            "total_slow_wave_sleep_time_milli",
            "total_rem_sleep_time_milli",
            "sleep_cycle_count",
            "disturbance_count",
        )),
    }


def recovery_row(recovery: Recovery, sleep_id: str | None) -> dict[str, Any]:
    return {
        "cycle_id": recovery.cycle_id,
        "sleep_id": sleep_id,
        "user_id": recovery.user_id,
        "score_state": recovery.scoring.state.value,
        **_score_columns(recovery.score, (
            "recovery_score",
            "resting_heart_rate",
            "hrv_rmssd_milli",
            "spo2_percentage",
            "skin_temp_celsius",
            "user_calibrating",
        )),
    }


def workout_row(workout: Workout) -> dict[str, Any]:
    score = workout.score
    zones = score.zone_durations if score is not None else None
    return {
        "id": workout.id,
        "activity_v1_id": workout.v1_id,
        "user_id": workout.user_id,
        "start_time": workout.start,
        "end_time": workout.end,
        "timezone_offset": workout.timezone_offset,
        "sport_id": workout.sport_id,
        "sport_name": workout.sport_name,
        "score_state": workout.scoring.state.value,
        **_score_columns(score, (
            "strain",
            "average_heart_rate",
            "max_heart_rate",
            "kilojoule",
            "percent_recorded",
            "distance_meter",
            "altitude_gain_meter",
            "altitude_change_meter",
        )),
        **_score_columns(zones, (
            "zone_zero_milli",
            "zone_one_milli",
            "zone_two_milli",
            "zone_three_milli",
            "zone_four_milli",
            "zone_five_milli",
        )),
    }


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class UpsertStore(ABC):
    """Write side of a sync run.  Subclasses implement the storage primitives."""

    @abstractmethod
    async def upsert_user(self, profile: WhoopProfile, tokens: OAuthTokens | None = None) -> None:
        """Insert or update the user row; tokens are left untouched when None."""

    @abstractmethod
    async def upsert_cycle(self, cycle: Cycle) -> WriteOutcome: ...

    @abstractmethod
    async def upsert_sleep(self, sleep: SleepSession) -> WriteOutcome: ...

    @abstractmethod
    async def upsert_workout(self, workout: Workout) -> WriteOutcome: ...

    @abstractmethod
    async def sleep_exists(self, sleep_id: str) -> bool: ...

    @abstractmethod
    async def _write_recovery(self, recovery: Recovery, sleep_id: str | None) -> WriteOutcome: ...

    @abstractmethod
    async def link_sleep_to_cycle(self, sleep_id: str, cycle_id: int) -> bool:
        """Point a stored sleep at its cycle.  Returns True if the row changed."""

    @abstractmethod
    async def get_user_tokens(self, user_id: int) -> OAuthTokens | None: ...

    @abstractmethod
    async def update_user_tokens(self, user_id: int, tokens: OAuthTokens) -> None: ...

    @abstractmethod
    async def list_users_with_tokens(self) -> list[StoredUser]: ...

    @abstractmethod
    async def latest_cycle_end(self, user_id: int) -> datetime | None: ...

    @abstractmethod
    async def latest_workout_end(self, user_id: int) -> datetime | None: ...

    async def upsert_recovery(self, recovery: Recovery) -> WriteOutcome:
        """Write a recovery, nulling ``sleep_id`` if that sleep is not stored yet."""
        sleep_id = recovery.sleep_id
        if sleep_id and not await self.sleep_exists(sleep_id):
            logger.warning(
                "Recovery for cycle %s references sleep %s which is not stored yet",
                recovery.cycle_id, sleep_id,
            )
            outcome = await self._write_recovery(recovery, None)
            return WriteOutcome.RACE if outcome is WriteOutcome.WRITTEN else outcome
        return await self._write_recovery(recovery, sleep_id)

    async def upsert_many(self, kind: ResourceKind, records: Iterable[Record]) -> UpsertResult:
        """Upsert records one at a time, collecting per-record failures."""
        kind = ResourceKind(kind)
        writer = {
            ResourceKind.CYCLE: self.upsert_cycle,
            ResourceKind.SLEEP: self.upsert_sleep,
            ResourceKind.RECOVERY: self.upsert_recovery,
            ResourceKind.WORKOUT: self.upsert_workout,
        }[kind]

        written = 0
        skipped = 0
        failed = 0
        errors: list[str] = []

        for record in records:
            try:
                outcome = await writer(record)
            except Exception as exc:
                msg = f"Failed to upsert {kind.value} {record.key}: {exc}"
                logger.error("%s", msg)
                errors.append(msg)
                failed += 1
                continue

            if outcome is WriteOutcome.SKIPPED:
                logger.info(
                    "Kept scored %s %s; incoming record is %s",
                    kind.value, record.key, record.scoring.state.value,
                )
                skipped += 1
                continue

            written += 1
            if outcome is WriteOutcome.RACE:
                errors.append(str(PersistenceRaceError(record.cycle_id, record.sleep_id)))

        logger.info(
            "Upserted %s: %d written, %d skipped, %d errors",
            kind.value, written, skipped, len(errors),
        )
        return UpsertResult(
            kind=kind, written=written, skipped=skipped, failed=failed, errors=tuple(errors)
        )


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


class PostgresUpsertStore(UpsertStore):
    """asyncpg-backed store.  Each write runs on its own pooled connection.

    Usage::

        store = PostgresUpsertStore(get_pool())
        await store.upsert_many(ResourceKind.CYCLE, cycles)
    """

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            from src.services.database import get_pool

            self._pool = get_pool()
        return self._pool

    async def _upsert_row(
        self,
        table: str,
        row: dict[str, Any],
        conflict: str,
        keep_existing: list[str] | None = None,
    ) -> WriteOutcome:
        columns = list(row)
        query = build_upsert_query(
            table, columns, [conflict], keep_existing=keep_existing, preserve_scored=True
        )
        try:
            async with self.pool.acquire() as conn:
                written = await conn.fetchrow(query, *row.values())
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"{table} {row[conflict]}: {exc}") from exc
        return WriteOutcome.WRITTEN if written is not None else WriteOutcome.SKIPPED

    async def upsert_user(self, profile: WhoopProfile, tokens: OAuthTokens | None = None) -> None:
        row: dict[str, Any] = {
            "id": profile.user_id,
            "email": profile.email,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
        }
        if tokens is not None:
            row.update(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_expires_at=tokens.expires_at,
            )
        query = build_upsert_query("whoop_users", list(row), ["id"])
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(query, *row.values())
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"whoop_users {profile.user_id}: {exc}") from exc

    async def upsert_cycle(self, cycle: Cycle) -> WriteOutcome:
        return await self._upsert_row("whoop_cycles", cycle_row(cycle), "id")

    async def upsert_sleep(self, sleep: SleepSession) -> WriteOutcome:
        return await self._upsert_row(
            "whoop_sleep", sleep_row(sleep), "id", keep_existing=["cycle_id"]
        )

    async def upsert_workout(self, workout: Workout) -> WriteOutcome:
        return await self._upsert_row("whoop_workouts", workout_row(workout), "id")

    async def sleep_exists(self, sleep_id: str) -> bool:
        async with self.pool.acquire() as conn:
            found = await conn.fetchval("SELECT 1 FROM whoop_sleep WHERE id = $1", sleep_id)
        return found is not None

    async def _write_recovery(self, recovery: Recovery, sleep_id: str | None) -> WriteOutcome:
        try:
            return await self._upsert_row(
                "whoop_recovery",
                recovery_row(recovery, sleep_id),
                "cycle_id",
                keep_existing=["sleep_id"],
            )
        except PersistenceError as exc:
            cause = exc.__cause__
            if (
                sleep_id
                and isinstance(cause, asyncpg.ForeignKeyViolationError)
                and "sleep" in (cause.constraint_name or "")
            ):
                # Sleep row vanished between the existence check and the write.
                outcome = await self._upsert_row(
                    "whoop_recovery",
                    recovery_row(recovery, None),
                    "cycle_id",
                    keep_existing=["sleep_id"],
                )
                return WriteOutcome.RACE if outcome is WriteOutcome.WRITTEN else outcome
            raise

    async def link_sleep_to_cycle(self, sleep_id: str, cycle_id: int) -> bool:
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute(
                    """
                    UPDATE whoop_sleep
                    SET cycle_id = $1, updated_at = NOW()
                    WHERE id = $2 AND (cycle_id IS NULL OR cycle_id <> $1)
                    """,
                    cycle_id,
                    sleep_id,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Link sleep {sleep_id} -> cycle {cycle_id}: {exc}") from exc
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] != "0"

    async def get_user_tokens(self, user_id: int) -> OAuthTokens | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT access_token, refresh_token, token_expires_at
                FROM whoop_users
                WHERE id = $1 AND refresh_token IS NOT NULL
                """,
                user_id,
            )
        if row is None or not row["access_token"]:
            return None
        return OAuthTokens(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["token_expires_at"],
        )

    async def update_user_tokens(self, user_id: int, tokens: OAuthTokens) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE whoop_users
                    SET access_token = $1, refresh_token = $2,
                        token_expires_at = $3, updated_at = NOW()
                    WHERE id = $4
                    """,
                    tokens.access_token,
                    tokens.refresh_token,
                    tokens.expires_at,
                    user_id,
                )
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"Token update for user {user_id}: {exc}") from exc

    async def list_users_with_tokens(self) -> list[StoredUser]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, email, first_name, last_name,
                       access_token, refresh_token, token_expires_at
                FROM whoop_users
                WHERE refresh_token IS NOT NULL
                ORDER BY id
                """
            )
        return [
            StoredUser(
                user_id=r["id"],
                email=r["email"],
                first_name=r["first_name"],
                last_name=r["last_name"],
                tokens=OAuthTokens(
                    access_token=r["access_token"] or "",
                    refresh_token=r["refresh_token"],
                    expires_at=r["token_expires_at"],
                ),
            )
            for r in rows
        ]

    async def latest_cycle_end(self, user_id: int) -> datetime | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT MAX(end_time) FROM whoop_cycles WHERE user_id = $1", user_id
            )

    async def latest_workout_end(self, user_id: int) -> datetime | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT MAX(end_time) FROM whoop_workouts WHERE user_id = $1", user_id
            )


async def init_schema(conn: asyncpg.Connection) -> None:
    """Create the whoop_* tables if they do not exist."""
    await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    logger.info("WHOOP schema applied from %s", SCHEMA_PATH.name)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


@dataclass
class InMemoryUpsertStore(UpsertStore):
    """Dict-backed store with the same write rules as the Postgres store.

    Like the SQL schema, a recovery must reference a stored cycle.
    """

    users: dict[int, dict[str, Any]] = field(default_factory=dict)
    cycles: dict[int, dict[str, Any]] = field(default_factory=dict)
    sleep: dict[str, dict[str, Any]] = field(default_factory=dict)
    recovery: dict[int, dict[str, Any]] = field(default_factory=dict)
    workouts: dict[str, dict[str, Any]] = field(default_factory=dict)

    @staticmethod
    def _put(
        table: dict,
        key: Any,
        row: dict[str, Any],
        keep_existing: Iterable[str] = (),
    ) -> WriteOutcome:
        existing = table.get(key)
        if existing is not None:
            if (
                existing["score_state"] == ScoreState.SCORED.value
                and row["score_state"] != ScoreState.SCORED.value
            ):
                return WriteOutcome.SKIPPED
            row = dict(row)
            for col in keep_existing:
                if row[col] is None:
                    row[col] = existing[col]
        table[key] = row
        return WriteOutcome.WRITTEN

    async def upsert_user(self, profile: WhoopProfile, tokens: OAuthTokens | None = None) -> None:
        row = self.users.setdefault(profile.user_id, {
            "access_token": None, "refresh_token": None, "token_expires_at": None,
        })
        row.update(
            id=profile.user_id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
        )
        if tokens is not None:
            row.update(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_expires_at=tokens.expires_at,
            )

    async def upsert_cycle(self, cycle: Cycle) -> WriteOutcome:
        return self._put(self.cycles, cycle.id, cycle_row(cycle))

    async def upsert_sleep(self, sleep: SleepSession) -> WriteOutcome:
        return self._put(self.sleep, sleep.id, sleep_row(sleep), keep_existing=("cycle_id",))

    async def upsert_workout(self, workout: Workout) -> WriteOutcome:
        return self._put(self.workouts, workout.id, workout_row(workout))

    async def sleep_exists(self, sleep_id: str) -> bool:
        return sleep_id in self.sleep

    async def _write_recovery(self, recovery: Recovery, sleep_id: str | None) -> WriteOutcome:
        if recovery.cycle_id not in self.cycles:
            raise PersistenceError(
                f"whoop_recovery {recovery.cycle_id}: cycle {recovery.cycle_id} is not stored"
            )
        return self._put(
            self.recovery,
            recovery.cycle_id,
            recovery_row(recovery, sleep_id),
            keep_existing=("sleep_id",),
        )

    async def link_sleep_to_cycle(self, sleep_id: str, cycle_id: int) -> bool:
        row = self.sleep.get(sleep_id)
        if row is None or row["cycle_id"] == cycle_id:
            return False
        row["cycle_id"] = cycle_id
        return True

    async def get_user_tokens(self, user_id: int) -> OAuthTokens | None:
        row = self.users.get(user_id)
        if row is None or not row["refresh_token"] or not row["access_token"]:
            return None
        return OAuthTokens(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["token_expires_at"],
        )

    async def update_user_tokens(self, user_id: int, tokens: OAuthTokens) -> None:
        row = self.users.get(user_id)
        if row is None:
            return
        row.update(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
        )

    async def list_users_with_tokens(self) -> list[StoredUser]:
        return [
            StoredUser(
                user_id=uid,
                email=row.get("email"),
                first_name=row.get("first_name"),
                last_name=row.get("last_name"),
                tokens=OAuthTokens(
                    access_token=row["access_token"] or "",
                    refresh_token=row["refresh_token"],
                    expires_at=row["token_expires_at"],
                ),
            )
            for uid, row in sorted(self.users.items())
            if row["refresh_token"]
        ]

    async def latest_cycle_end(self, user_id: int) -> datetime | None:
        return self._latest_end(self.cycles, user_id)

    async def latest_workout_end(self, user_id: int) -> datetime | None:
        return self._latest_end(self.workouts, user_id)

    @staticmethod
    def _latest_end(table: dict, user_id: int) -> datetime | None:
        ends = [r["end_time"] for r in table.values() if r["user_id"] == user_id and r["end_time"]]
        return max(ends) if ends else None
