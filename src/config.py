"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    apply_schema_on_startup: bool = True

    # --- WHOOP OAuth ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""

    # --- Cron ---
    cron_secret: str = ""  # empty disables the cron endpoint

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
