from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Event Ledger API"
    database_url: str = "sqlite:///event_ledger.db"
    log_level: str = "INFO"
    lock_timeout_seconds: float = 10.0
    sqlite_busy_timeout_seconds: float = 30.0
    default_page_limit: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LEDGER_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
