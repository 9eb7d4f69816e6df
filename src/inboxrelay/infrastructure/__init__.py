# src/inboxrelay/infrastructure/__init__.py
"""Infrastructure layer - IMAP, PostgreSQL, webhook delivery and configuration."""

from inboxrelay.infrastructure.postgres_client import (
    PostgresClientWrapper,
    postgres_lifespan,
)
from inboxrelay.infrastructure.settings import Settings, get_settings

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    # Postgres
    "PostgresClientWrapper",
    "postgres_lifespan",
]
