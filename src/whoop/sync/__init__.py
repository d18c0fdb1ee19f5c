"""WHOOP sync pipeline.

Modules:
    store        — UpsertStore interface, Postgres and in-memory implementations
    dedup        — Upsert query builder and in-run dedup cache
    reconciler   — Missing-cycle fetch and sleep → cycle link backfill
    orchestrator — One user's sync run (fixed step order)
    scheduler    — Daily sync across every connected user
"""
