"""Store implementations."""

from inboxrelay.infrastructure.stores.postgres_mailbox_store import PostgresMailboxStore

__all__ = [
    "PostgresMailboxStore",
]
