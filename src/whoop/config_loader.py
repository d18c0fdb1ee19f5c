"""Load, validate, and hot-reload the whoop-sync pipeline configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; no restart required.

Usage::

    from src.whoop.config_loader import get_sync_config

    config = get_sync_config()
    config.rate_limit.min_interval_s    # 0.7
    config.pagination.max_pages         # 100
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("whoopsync.whoop.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ApiConfig:
    base_url: str
    token_url: str
    timeout_seconds: float
    page_limit: int
    scopes: list[str] = field(default_factory=list)


@dataclass
class RateLimitConfig:
    """Client-side throttle.  Intervals are in milliseconds."""

    min_interval_ms: int
    throttled_interval_ms: int
    daily_cap: int
    daily_threshold: int
    progress_log_every: int = 50

    @property
    def min_interval_s(self) -> float:
        return self.min_interval_ms / 1000.0

    @property
    def throttled_interval_s(self) -> float:
        return self.throttled_interval_ms / 1000.0


@dataclass
class RetryConfig:
    max_retries: int
    base_delay_ms: int

    def backoff_s(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based): 1s, 2s, 4s, ..."""
        return (2 ** attempt) * self.base_delay_ms / 1000.0


@dataclass
class PaginationConfig:
    max_pages: int


@dataclass
class ReconcileConfig:
    max_attempts: int
    base_delay_ms: int
    batch_size: int
    concurrency: int


@dataclass
class SyncSettings:
    daily_window_days: int
    token_refresh_buffer_seconds: int
    user_delay_ms: int


@dataclass
class SyncConfig:
    """Complete, validated pipeline configuration.

    This is the single in-memory representation of sync_config.yaml.
    """

    version: str
    api: ApiConfig
    rate_limit: RateLimitConfig
    retry: RetryConfig
    pagination: PaginationConfig
    reconcile: ReconcileConfig
    sync: SyncSettings
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected before raising so one edit-and-retry cycle
    fixes the whole file.

    Raises:
        ConfigValidationError: If values are missing, non-numeric or out of range.
    """
    errors: list[str] = []

    def _num(section: dict, key: str, name: str, default: Any, cast: type = int,
             minimum: float | None = 0) -> Any:
        value = section.get(key, default)
        try:
            value = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if minimum is not None and value < minimum:
            errors.append(f"{name}.{key} = {value} must be >= {minimum}")
        return value

    version = str(raw.get("version", "1.0"))

    # ── API ──
    api_raw = raw.get("api") or {}
    base_url = api_raw.get("base_url")
    if not base_url:
        errors.append("Missing required key 'base_url' in section 'api'")
    api = ApiConfig(
        base_url=str(base_url or "").rstrip("/"),
        token_url=str(api_raw.get("token_url", "https://api.prod.whoop.com/oauth/oauth2/token")),
        timeout_seconds=_num(api_raw, "timeout_seconds", "api", 60, float, 1),
        page_limit=_num(api_raw, "page_limit", "api", 25, int, 1),
        scopes=list(api_raw.get("scopes") or []),
    )
    if api.page_limit > 25:
        errors.append(f"api.page_limit = {api.page_limit} exceeds the WHOOP maximum of 25")

    # ── Rate limit ──
    rl_raw = raw.get("rate_limit") or {}
    rate_limit = RateLimitConfig(
        min_interval_ms=_num(rl_raw, "min_interval_ms", "rate_limit", 700),
        throttled_interval_ms=_num(rl_raw, "throttled_interval_ms", "rate_limit", 1500),
        daily_cap=_num(rl_raw, "daily_cap", "rate_limit", 10000, int, 1),
        daily_threshold=_num(rl_raw, "daily_threshold", "rate_limit", 9500, int, 1),
        progress_log_every=_num(rl_raw, "progress_log_every", "rate_limit", 50, int, 1),
    )
    if rate_limit.daily_threshold > rate_limit.daily_cap:
        errors.append(
            f"rate_limit.daily_threshold ({rate_limit.daily_threshold}) "
            f"must not exceed daily_cap ({rate_limit.daily_cap})"
        )
    if rate_limit.throttled_interval_ms < rate_limit.min_interval_ms:
        errors.append("rate_limit.throttled_interval_ms must be >= min_interval_ms")

    # ── Retry ──
    retry_raw = raw.get("retry") or {}
    retry = RetryConfig(
        max_retries=_num(retry_raw, "max_retries", "retry", 3),
        base_delay_ms=_num(retry_raw, "base_delay_ms", "retry", 1000),
    )

    # ── Pagination ──
    pg_raw = raw.get("pagination") or {}
    pagination = PaginationConfig(
        max_pages=_num(pg_raw, "max_pages", "pagination", 100, int, 1),
    )

    # ── Reconcile ──
    rc_raw = raw.get("reconcile") or {}
    reconcile = ReconcileConfig(
        max_attempts=_num(rc_raw, "max_attempts", "reconcile", 3, int, 1),
        base_delay_ms=_num(rc_raw, "base_delay_ms", "reconcile", 1000),
        batch_size=_num(rc_raw, "batch_size", "reconcile", 50, int, 1),
        concurrency=_num(rc_raw, "concurrency", "reconcile", 1, int, 1),
    )

    # ── Sync ──
    sy_raw = raw.get("sync") or {}
    sync = SyncSettings(
        daily_window_days=_num(sy_raw, "daily_window_days", "sync", 3, int, 1),
        token_refresh_buffer_seconds=_num(sy_raw, "token_refresh_buffer_seconds", "sync", 300),
        user_delay_ms=_num(sy_raw, "user_delay_ms", "sync", 1000),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        api=api,
        rate_limit=rate_limit,
        retry=retry,
        pagination=pagination,
        reconcile=reconcile,
        sync=sync,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
