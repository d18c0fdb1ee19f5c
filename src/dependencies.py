"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.whoop.sync.store import PostgresUpsertStore, UpsertStore


def get_store() -> UpsertStore:
    """Store backed by the app's asyncpg pool (overridden in tests)."""
    return PostgresUpsertStore()


async def verify_cron_secret(
    request: Request, settings: Annotated[Settings, Depends(get_settings)]
) -> None:
    """Accept the cron secret from ``x-cron-secret`` or a ``secret``/``token`` query param."""
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Cron secret not configured")

    provided = (
        request.headers.get("x-cron-secret")
        or request.query_params.get("secret")
        or request.query_params.get("token")
        or ""
    )
    if not hmac.compare_digest(provided.encode(), settings.cron_secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def get_bearer_token(request: Request) -> str:
    """Extract the caller's WHOOP access token from ``Authorization: Bearer``."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return token.strip()


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Store = Annotated[UpsertStore, Depends(get_store)]
BearerToken = Annotated[str, Depends(get_bearer_token)]
CronAuthorized = Depends(verify_cron_secret)
