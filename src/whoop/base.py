"""Typed WHOOP v2 records and score variants.

The WHOOP API returns loosely-typed JSON in which the ``score`` block is
present only once a record has been scored.  Every record here carries a
``scoring`` field that is one of three variants:

    Scored(score)   — score_state == "SCORED" and a score block was returned
    Pending()       — score_state == "PENDING_SCORE"
    Unscored()      — score_state == "UNSCORED" (or SCORED with no score block)

Score-dependent values are only reachable through ``Scored.score``, so an
unscored record cannot populate score columns by accident.

These types are the single source of truth consumed by the paginator,
reconciler, store and orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ClassVar, Generic, TypeVar, Union

from src.whoop.sports import sport_name as _sport_name

logger = logging.getLogger("whoopsync.whoop")


class ScoreState(str, Enum):
    SCORED = "SCORED"
    PENDING_SCORE = "PENDING_SCORE"
    UNSCORED = "UNSCORED"


class ResourceKind(str, Enum):
    """The four paginated WHOOP collections."""

    CYCLE = "cycles"
    SLEEP = "sleep"
    RECOVERY = "recovery"
    WORKOUT = "workouts"


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after authentication or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"


# ---------------------------------------------------------------------------
# Score variants
# ---------------------------------------------------------------------------

S = TypeVar("S")


@dataclass(frozen=True)
class Scored(Generic[S]):
    score: S
    state: ClassVar[ScoreState] = ScoreState.SCORED


@dataclass(frozen=True)
class Pending:
    state: ClassVar[ScoreState] = ScoreState.PENDING_SCORE


@dataclass(frozen=True)
class Unscored:
    state: ClassVar[ScoreState] = ScoreState.UNSCORED


Scoring = Union[Scored[S], Pending, Unscored]


@dataclass(frozen=True)
class CycleScore:
    strain: float | None
    kilojoule: float | None
    average_heart_rate: int | None
    max_heart_rate: int | None


@dataclass(frozen=True)
class StageSummary:
    total_in_bed_time_milli: int | None = None
    total_awake_time_milli: int | None = None
    total_no_data_time_milli: int | None = None
    total_light_sleep_time_milli: int | None = None
    total_slow_wave_sleep_time_milli: int | None = None
    total_rem_sleep_time_milli: int | None = None
    sleep_cycle_count: int | None = None
    disturbance_count: int | None = None


@dataclass(frozen=True)
class SleepScore:
    sleep_performance_percentage: float | None
    sleep_consistency_percentage: float | None
    sleep_efficiency_percentage: float | None
    respiratory_rate: float | None
    stage_summary: StageSummary = field(default_factory=StageSummary)


@dataclass(frozen=True)
class RecoveryScore:
    recovery_score: float | None
    resting_heart_rate: float | None
    hrv_rmssd_milli: float | None
    spo2_percentage: float | None = None
    skin_temp_celsius: float | None = None
    user_calibrating: bool = False


@dataclass(frozen=True)
class ZoneDurations:
    zone_zero_milli: int | None = None
    zone_one_milli: int | None = None
    zone_two_milli: int | None = None
    zone_three_milli: int | None = None
    zone_four_milli: int | None = None
    zone_five_milli: int | None = None


@dataclass(frozen=True)
class WorkoutScore:
    strain: float | None
    average_heart_rate: int | None
    max_heart_rate: int | None
    kilojoule: float | None
    percent_recorded: float | None = None
    distance_meter: float | None = None
    altitude_gain_meter: float | None = None
    altitude_change_meter: float | None = None
    zone_durations: ZoneDurations = field(default_factory=ZoneDurations)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WhoopProfile:
    user_id: int
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @classmethod
    def from_api(cls, raw: dict) -> "WhoopProfile":
        return cls(
            user_id=int(raw["user_id"]),
            email=raw.get("email"),
            first_name=raw.get("first_name"),
            last_name=raw.get("last_name"),
        )

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or str(self.user_id)


@dataclass(frozen=True)
class Cycle:
    """A physiological day.  ``end`` is None while the cycle is still open."""

    id: int
    user_id: int
    start: datetime | None
    end: datetime | None
    timezone_offset: str | None
    scoring: Scoring[CycleScore]

    @property
    def key(self) -> int:
        return self.id

    @property
    def is_complete(self) -> bool:
        return self.end is not None

    @property
    def score(self) -> CycleScore | None:
        return self.scoring.score if isinstance(self.scoring, Scored) else None

    @classmethod
    def from_api(cls, raw: dict) -> "Cycle":
        score = raw.get("score")
        return cls(
            id=int(raw["id"]),
            user_id=int(raw["user_id"]),
            start=parse_iso_datetime(raw.get("start")),
            end=parse_iso_datetime(raw.get("end")),
            timezone_offset=raw.get("timezone_offset"),
            scoring=_scoring(
                raw,
                lambda: CycleScore(
                    strain=safe_float(score.get("strain")),
                    kilojoule=safe_float(score.get("kilojoule")),
                    average_heart_rate=safe_int(score.get("average_heart_rate")),
                    max_heart_rate=safe_int(score.get("max_heart_rate")),
                ),
            ),
        )


@dataclass(frozen=True)
class SleepSession:
    """One sleep or nap.  ``cycle_id`` is rarely present at fetch time."""

    id: str
    user_id: int
    start: datetime | None
    end: datetime | None
    timezone_offset: str | None
    nap: bool
    scoring: Scoring[SleepScore]
    v1_id: int | None = None
    cycle_id: int | None = None

    @property
    def key(self) -> str:
        return self.id

    @property
    def is_complete(self) -> bool:
        return self.end is not None

    @property
    def score(self) -> SleepScore | None:
        return self.scoring.score if isinstance(self.scoring, Scored) else None

    @classmethod
    def from_api(cls, raw: dict) -> "SleepSession":
        score = raw.get("score")

        def _build() -> SleepScore:
            stages = score.get("stage_summary") or {}
            return SleepScore(
                sleep_performance_percentage=safe_float(score.get("sleep_performance_percentage")),
                sleep_consistency_percentage=safe_float(score.get("sleep_consistency_percentage")),
                sleep_efficiency_percentage=safe_float(score.get("sleep_efficiency_percentage")),
                respiratory_rate=safe_float(score.get("respiratory_rate")),
                stage_summary=StageSummary(
                    **{k: safe_int(stages.get(k)) for k in StageSummary.__dataclass_fields__}
                ),
            )

        return cls(
            id=str(raw["id"]),
            user_id=int(raw["user_id"]),
            start=parse_iso_datetime(raw.get("start")),
            end=parse_iso_datetime(raw.get("end")),
            timezone_offset=raw.get("timezone_offset"),
            nap=bool(raw.get("nap", False)),
            scoring=_scoring(raw, _build),
            v1_id=safe_int(raw.get("v1_id")),
            cycle_id=safe_int(raw.get("cycle_id")),
        )


@dataclass(frozen=True)
class Recovery:
    """Recovery for one cycle.  The only record linking a cycle to a sleep."""

    cycle_id: int
    sleep_id: str | None
    user_id: int
    scoring: Scoring[RecoveryScore]
    created_at: datetime | None = None

    @property
    def key(self) -> int:
        return self.cycle_id

    @property
    def is_complete(self) -> bool:
        # Recoveries have no end timestamp; they exist once the cycle is anchored.
        return True

    @property
    def score(self) -> RecoveryScore | None:
        return self.scoring.score if isinstance(self.scoring, Scored) else None

    @classmethod
    def from_api(cls, raw: dict) -> "Recovery":
        score = raw.get("score")
        sleep_id = raw.get("sleep_id")
        return cls(
            cycle_id=int(raw["cycle_id"]),
            sleep_id=str(sleep_id) if sleep_id else None,
            user_id=int(raw["user_id"]),
            scoring=_scoring(
                raw,
                lambda: RecoveryScore(
                    recovery_score=safe_float(score.get("recovery_score")),
                    resting_heart_rate=safe_float(score.get("resting_heart_rate")),
                    hrv_rmssd_milli=safe_float(score.get("hrv_rmssd_milli")),
                    spo2_percentage=safe_float(score.get("spo2_percentage")),
                    skin_temp_celsius=safe_float(score.get("skin_temp_celsius")),
                    user_calibrating=bool(score.get("user_calibrating", False)),
                ),
            ),
            created_at=parse_iso_datetime(raw.get("created_at")),
        )


@dataclass(frozen=True)
class Workout:
    id: str
    user_id: int
    start: datetime | None
    end: datetime | None
    timezone_offset: str | None
    sport_id: int | None
    sport_name: str
    scoring: Scoring[WorkoutScore]
    v1_id: int | None = None

    @property
    def key(self) -> str:
        return self.id

    @property
    def is_complete(self) -> bool:
        return self.end is not None

    @property
    def score(self) -> WorkoutScore | None:
        return self.scoring.score if isinstance(self.scoring, Scored) else None

    @classmethod
    def from_api(cls, raw: dict) -> "Workout":
        score = raw.get("score")

        def _build() -> WorkoutScore:
            zones = score.get("zone_durations") or score.get("zone_duration") or {}
            return WorkoutScore(
                strain=safe_float(score.get("strain")),
                average_heart_rate=safe_int(score.get("average_heart_rate")),
                max_heart_rate=safe_int(score.get("max_heart_rate")),
                kilojoule=safe_float(score.get("kilojoule")),
                percent_recorded=safe_float(score.get("percent_recorded")),
                distance_meter=safe_float(score.get("distance_meter")),
                altitude_gain_meter=safe_float(score.get("altitude_gain_meter")),
                altitude_change_meter=safe_float(score.get("altitude_change_meter")),
                zone_durations=ZoneDurations(
                    **{k: safe_int(zones.get(k)) for k in ZoneDurations.__dataclass_fields__}
                ),
            )

        sport_id = safe_int(raw.get("sport_id"))
        return cls(
            id=str(raw["id"]),
            user_id=int(raw["user_id"]),
            start=parse_iso_datetime(raw.get("start")),
            end=parse_iso_datetime(raw.get("end")),
            timezone_offset=raw.get("timezone_offset"),
            sport_id=sport_id,
            sport_name=_sport_name(sport_id, raw.get("sport_name")),
            scoring=_scoring(raw, _build),
            v1_id=safe_int(raw.get("v1_id")),
        )


Record = Union[Cycle, SleepSession, Recovery, Workout]

RECORD_TYPES: dict[ResourceKind, type] = {
    ResourceKind.CYCLE: Cycle,
    ResourceKind.SLEEP: SleepSession,
    ResourceKind.RECOVERY: Recovery,
    ResourceKind.WORKOUT: Workout,
}


def parse_record(kind: ResourceKind, raw: dict) -> Record:
    """Build the typed record for ``kind`` from one API JSON object."""
    return RECORD_TYPES[kind].from_api(raw)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _scoring(raw: dict, build: Callable[[], S]) -> Scoring[S]:
    state = raw.get("score_state")
    if state == ScoreState.SCORED.value:
        if raw.get("score"):
            return Scored(build())
        logger.warning("Record marked SCORED without a score block: %r", raw.get("id", raw.get("cycle_id")))
        return Unscored()
    if state == ScoreState.PENDING_SCORE.value:
        return Pending()
    return Unscored()


def safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string to a timezone-aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is None
    or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_api_timestamp(value: datetime) -> str:
    """Format a datetime the way WHOOP expects query timestamps (ms, Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
