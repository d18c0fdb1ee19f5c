"""Deduplication helpers for WHOOP ingestion.

Dedup keys (natural external ids, matching the UNIQUE constraints in
schema.sql):
    - whoop_cycles:   id            (WHOOP cycle id, int)
    - whoop_sleep:    id            (WHOOP sleep UUID)
    - whoop_recovery: cycle_id      (one recovery per cycle)
    - whoop_workouts: id            (WHOOP workout UUID)
"""

from __future__ import annotations

import logging
from typing import Hashable

logger = logging.getLogger("whoopsync.whoop.sync.dedup")


class InMemoryDedupCache:
    """In-process dedup cache for a single pagination pass.

    Not a replacement for database UNIQUE constraints; those are the
    authoritative dedup mechanism.  This cache drops records repeated
    across pages before they reach the store.

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(record.key):
            logger.debug("Skipping duplicate: %s", record.key)
        else:
            cache.mark_seen(record.key)
    """

    def __init__(self) -> None:
        self._seen: set[Hashable] = set()

    def is_seen(self, key: Hashable) -> bool:
        return key in self._seen

    def mark_seen(self, key: Hashable) -> None:
        self._seen.add(key)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    keep_existing: list[str] | None = None,
    preserve_scored: bool = False,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes: safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        keep_existing:    Update columns whose stored value survives an incoming
                          NULL (``COALESCE(EXCLUDED.col, table.col)``).
        preserve_scored:  Skip the update when the stored row is SCORED and the
                          incoming row is not.  Requires a ``score_state`` column.

    Returns:
        Parameterized SQL string.  With ``preserve_scored`` the statement
        ends in ``RETURNING 1`` so callers can tell a skipped row (no row
        returned) from a written one.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    keep = set(keep_existing or ())

    if update_columns:
        update_set = ", ".join(
            f"{col} = COALESCE(EXCLUDED.{col}, {table}.{col})" if col in keep
            else f"{col} = EXCLUDED.{col}"
            for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
        if preserve_scored:
            do_clause += (
                f" WHERE {table}.score_state IS DISTINCT FROM 'SCORED'"
                " OR EXCLUDED.score_state = 'SCORED'"
            )
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if preserve_scored:
        query += " RETURNING 1"
    return query
