"""PostgreSQL client for mailbox assignments, sync cursors and stored emails."""

from contextlib import asynccontextmanager
from typing import Any

import psycopg
from loguru import logger
from psycopg.rows import dict_row

from inboxrelay.infrastructure.settings import Settings, get_settings

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS mailboxes (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        imap_host TEXT NOT NULL,
        imap_port INTEGER NOT NULL DEFAULT 993,
        imap_secure BOOLEAN NOT NULL DEFAULT TRUE,
        instance_id TEXT NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_mailboxes_instance_active ON mailboxes(instance_id, active);

    CREATE TABLE IF NOT EXISTS mailbox_sync_status (
        mailbox_id BIGINT PRIMARY KEY REFERENCES mailboxes(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        last_processed_uid BIGINT NOT NULL DEFAULT 0,
        initial_sync_completed_at TIMESTAMP WITH TIME ZONE,
        last_synced_at TIMESTAMP WITH TIME ZONE
    );

    CREATE TABLE IF NOT EXISTS emails (
        id BIGSERIAL PRIMARY KEY,
        mailbox_id BIGINT NOT NULL REFERENCES mailboxes(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        message_id TEXT,
        uid BIGINT NOT NULL,
        sender JSONB,
        recipients JSONB,
        subject TEXT,
        body_text TEXT,
        body_html TEXT,
        received_at TIMESTAMP WITH TIME ZONE,
        has_attachments BOOLEAN NOT NULL DEFAULT FALSE,
        original_from TEXT,
        raw_headers JSONB,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (mailbox_id, uid)
    );

    CREATE INDEX IF NOT EXISTS idx_emails_mailbox_received ON emails(mailbox_id, received_at DESC);
"""


class PostgresClientWrapper:
    """Wrapper around one async PostgreSQL connection shared by all sessions.

    psycopg serializes statements on a connection, so concurrent sessions
    queue on it rather than interleave mid-statement.
    """

    def __init__(self, settings: Settings | None = None):
        """Initialize PostgreSQL client wrapper."""
        self.settings = settings or get_settings()
        self._connection: psycopg.AsyncConnection | None = None

    async def connect(self) -> psycopg.AsyncConnection:
        """Establish connection to PostgreSQL."""
        if self._connection is None or self._connection.closed:
            logger.info(f"Connecting to PostgreSQL at {self.settings.postgres_host}:{self.settings.postgres_port}")
            self._connection = await psycopg.AsyncConnection.connect(
                self.settings.postgres_dsn,
                autocommit=True,
                row_factory=dict_row,
            )
            logger.info("PostgreSQL connection established")
        return self._connection

    async def disconnect(self) -> None:
        """Close PostgreSQL connection."""
        if self._connection is not None and not self._connection.closed:
            await self._connection.close()
            self._connection = None
            logger.info("PostgreSQL connection closed")

    async def get_connection(self) -> psycopg.AsyncConnection:
        """Get or (re)create the PostgreSQL connection."""
        return await self.connect()

    async def health_check(self) -> dict[str, Any]:
        """Check PostgreSQL connection health."""
        try:
            conn = await self.connect()
            async with conn.cursor() as cur:
                await cur.execute("SELECT version() AS version")
                row = await cur.fetchone()
            return {
                "status": "healthy",
                "host": self.settings.postgres_host,
                "port": self.settings.postgres_port,
                "database": self.settings.postgres_db,
                "version": row["version"],
            }
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return {
                "status": "unhealthy",
                "host": self.settings.postgres_host,
                "port": self.settings.postgres_port,
                "database": self.settings.postgres_db,
                "error": str(e),
            }

    async def setup_schema(self) -> None:
        """Set up database schema for the application."""
        conn = await self.connect()
        async with conn.cursor() as cur:
            await cur.execute(SCHEMA_SQL)
        logger.info("Database schema setup complete")


@asynccontextmanager
async def postgres_lifespan(settings: Settings | None = None):
    """Async context manager for PostgreSQL connection lifecycle."""
    client = PostgresClientWrapper(settings)
    await client.connect()
    try:
        yield client
    finally:
        await client.disconnect()
