"""
Central configuration for the shielded pool.

Values come from the environment (prefix ``ZKPOOL_``) or a ``.env`` file in
the working directory.

Usage:

    from zkpool.config.settings import get_settings

    settings = get_settings()
    db = DatabaseManager(settings.database_url)
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolSettings(BaseSettings):
    """Runtime settings for the relayer, listener and client."""

    model_config = SettingsConfigDict(
        env_prefix="ZKPOOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite:///zk_pool.db",
        description="SQLAlchemy URL of the row store.",
    )
    relayer_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL the relayer client talks to.",
    )
    relayer_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent by the relayer client, if any.",
    )
    program_id: str = Field(
        default="",
        description="Ledger program whose logs carry pool events.",
    )
    ledger_rpc_url: str = Field(
        default="http://127.0.0.1:8899",
        description="Ledger RPC endpoint for log subscriptions.",
    )
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    prepare_retries: int = Field(default=4, ge=1, description="Attempts for prepare calls.")
    retry_base_seconds: float = Field(default=0.25, ge=0)
    reconnect_base_seconds: float = Field(default=1.0, gt=0)
    reconnect_max_seconds: float = Field(default=30.0, gt=0)
    history_page_limit: int = Field(default=20, ge=1, le=500)
    artifacts_dir: str = Field(default="circuits", description="Directory holding circuit artifacts.")
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()


@lru_cache(maxsize=1)
def get_settings() -> PoolSettings:
    """
    Cached accessor for PoolSettings.

    Tests call ``get_settings.cache_clear()`` after changing the environment.
    """
    return PoolSettings()
