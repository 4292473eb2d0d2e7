"""
Runtime settings.

Loads configuration from environment variables (prefix ``MLM_``) using
pydantic-settings. A local ``.env`` file is read when present.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MLM_",
        env_file=".env",
        extra="ignore",
    )

    # Postgres DSN used by the db-backed engines
    database_url: str = "dbname=mlm user=mlm password=secret host=localhost port=5432"

    # base for shareable invite links: {app_base_url}/convite/{code}
    app_base_url: str = "http://localhost:3000"

    code_generation_max_attempts: int = Field(5, ge=1)
    balance_update_max_retries: int = Field(3, ge=1)
    lock_timeout_seconds: float = Field(5.0, gt=0)

    log_level: str = "INFO"
    log_file: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
