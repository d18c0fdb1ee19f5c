"""WHOOP data-sync ingestion core.

Pulls a user's WHOOP v2 data (cycles, sleep, recovery, workouts) through a
rate-limited client, repairs the cross-references between the collections,
and upserts everything idempotently into the store.

Subpackages:
    sync/  — Store, reconciler, per-user orchestrator, daily multi-user scheduler

Core modules:
    base          — Typed WHOOP records and score variants
    errors        — Exception hierarchy
    auth          — TokenProvider implementations (static, refreshing)
    http_client   — Rate-limited, retrying HTTP client
    paginator     — Cursor pagination over the four collections
    client        — API facade used by the orchestrator
    config_loader — Load/validate/hot-reload sync_config.yaml
    sports        — Sport id → name lookup
"""

from src.whoop.base import (
    Cycle,
    OAuthTokens,
    Recovery,
    ResourceKind,
    ScoreState,
    SleepSession,
    WhoopProfile,
    Workout,
)
from src.whoop.config_loader import SyncConfig, get_sync_config
from src.whoop.errors import WhoopError

__all__ = [
    "Cycle",
    "OAuthTokens",
    "Recovery",
    "ResourceKind",
    "ScoreState",
    "SleepSession",
    "SyncConfig",
    "WhoopError",
    "WhoopProfile",
    "Workout",
    "get_sync_config",
]
