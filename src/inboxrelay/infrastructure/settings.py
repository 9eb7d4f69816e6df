"""Application settings using Pydantic Settings for configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Inbox Relay"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Sharding: only mailboxes assigned to this instance are managed here
    instance_id: str = "1"

    # Downstream webhook sink
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 30.0
    webhook_max_attempts: int = Field(default=3, ge=1)
    webhook_backoff_base_seconds: float = 1.0
    webhook_backoff_max_seconds: float = 10.0
    recent_delivery_cache_size: int = Field(default=1000, ge=2)

    # Schedulers
    reconcile_interval_seconds: float = 60.0
    poll_tick_seconds: float = 5.0
    poll_interval_seconds: float = 20.0
    poll_jitter_seconds: float = 5.0
    reconnect_delay_seconds: float = 30.0
    lock_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 2.0

    # IMAP
    imap_mailbox: str = "INBOX"
    imap_timeout_seconds: float = 30.0

    # PostgreSQL (mailboxes, sync cursors, stored emails)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: SecretStr = Field(default=SecretStr("postgres"))
    postgres_db: str = "inboxrelay"
    postgres_setup_schema: bool = False

    # Read-only session status API
    status_api_enabled: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    @computed_field
    @property
    def postgres_dsn(self) -> str:
        """Construct PostgreSQL connection string."""
        password = self.postgres_password.get_secret_value()
        return f"postgresql://{self.postgres_user}:{password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
