from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    app_name: str = Field(default="Chatbot Channel Orchestrator")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # MongoDB
    mongo_uri: str = Field(default="mongodb://localhost:27017")
    mongo_database: str = Field(default="chatbot_platform")
    tenants_collection: str = Field(default="tenants")
    menus_collection: str = Field(default="menus")
    config_collection: str = Field(default="bot_config")
    datasets_collection: str = Field(default="datasets")
    dataset_rows_collection: str = Field(default="dataset_rows")
    usage_collection: str = Field(default="usage")
    usage_history_collection: str = Field(default="usage_history")

    # Auth
    jwt_secret: str = Field(
        default="change-me-to-a-long-random-secret-value",
        validation_alias=AliasChoices("JWT_SECRET", "SERVICE_AUTH_SECRET"),
    )
    jwt_algorithm: str = Field(default="HS256")

    # Quotas (0 = unlimited), overridable per tenant
    default_daily_limit: int = Field(default=200)
    default_monthly_limit: int = Field(default=5000)
    quota_timezone: str = Field(default="UTC")
    usage_history_days: int = Field(default=7)

    # Dispatcher
    view_table_row_cap: int = Field(default=10)
    search_result_cap: int = Field(default=5)
    greeting_keywords: List[str] = Field(
        default_factory=lambda: ["/start", "start", "hi", "hello", "halo", "hai"]
    )

    # Sessions
    pairing_ttl_seconds: float = Field(default=20.0)
    handshake_timeout_seconds: float = Field(default=30.0)
    disconnect_timeout_seconds: float = Field(default=5.0)
    session_max_retries: int = Field(default=3)
    session_backoff_seconds: float = Field(default=1.0)
    session_backoff_max_seconds: float = Field(default=30.0)
    click_debounce_seconds: float = Field(default=2.0)

    # Channels
    telegram_api_base: str = Field(default="https://api.telegram.org")
    telegram_poll_timeout: int = Field(default=30)
    whatsapp_bridge_url: str = Field(
        default="http://localhost:3001",
        validation_alias=AliasChoices("WHATSAPP_BRIDGE_URL", "WA_BRIDGE_URL"),
    )

    # API
    api_rate_limit: str = Field(default="120/minute")
    max_upload_mb: float = Field(default=10.0)
    allowed_origins: List[str] = Field(
        default_factory=list,
        validation_alias="ALLOWED_ORIGINS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
