"""Exception hierarchy for the WHOOP sync pipeline.

Transport, rate-limit and API errors are raised by the HTTP client once its
retry budget is spent.  Reconciliation and persistence-race errors are
normally *collected* into a run's error list rather than raised; they exist
as types so call sites can format them consistently and tests can assert on
them.
"""

from __future__ import annotations


class WhoopError(Exception):
    """Base class for all whoop-sync errors."""


class TransportError(WhoopError):
    """Network-level failure reaching the WHOOP API (after retries)."""


class ApiError(WhoopError):
    """Non-2xx response from the WHOOP API.

    Attributes:
        status: HTTP status code.
        body:   Response body text (truncated for logging).
    """

    def __init__(self, status: int, body: str = "", endpoint: str | None = None) -> None:
        self.status = status
        self.body = body
        self.endpoint = endpoint
        where = f" for {endpoint}" if endpoint else ""
        super().__init__(f"WHOOP API error{where}: {status} - {body[:200]}")


class RateLimitError(ApiError):
    """HTTP 429 that persisted through every backoff retry."""

    def __init__(self, body: str = "", endpoint: str | None = None) -> None:
        super().__init__(429, body, endpoint)


class TokenError(WhoopError):
    """No usable access token: missing, expired without refresh, or refresh failed."""


class ReconciliationGapError(WhoopError):
    """A cycle referenced by a recovery record could not be fetched by id."""

    def __init__(self, cycle_id: int, attempts: int, cause: Exception | None = None) -> None:
        self.cycle_id = cycle_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Cycle {cycle_id}: Failed after {attempts} attempts ({cause})")


class PersistenceError(WhoopError):
    """A write to the store failed and will not resolve by itself."""


class PersistenceRaceError(PersistenceError):
    """A write referenced a related row that has not been ingested yet.

    Expected to self-heal once the sleep rows are written (backfill step) or
    on the next sync run.
    """

    def __init__(self, cycle_id: int, sleep_id: str) -> None:
        self.cycle_id = cycle_id
        self.sleep_id = sleep_id
        super().__init__(
            f"Recovery for cycle {cycle_id} references missing sleep_id: {sleep_id}"
        )


class SyncAbortedError(WhoopError):
    """A load-bearing step (profile or recovery fetch) failed; the run stopped.

    Attributes:
        step:   Name of the step that failed.
        errors: Non-fatal errors collected before the abort.
    """

    def __init__(self, step: str, cause: Exception, errors: list[str] | None = None) -> None:
        self.step = step
        self.cause = cause
        self.errors = list(errors or [])
        super().__init__(f"Sync aborted at {step}: {cause}")
