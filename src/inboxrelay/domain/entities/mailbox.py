from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

DEFAULT_IMAP_PORT = 993


@dataclass(frozen=True)
class MailboxCredential:
    """One watched mailbox, as assigned to a worker instance.

    Owned by the external store. A session treats it as immutable for its
    whole lifetime, so a password change is only picked up after restart.
    """

    id: int
    email: str
    password: str
    imap_host: str
    imap_port: int = DEFAULT_IMAP_PORT
    imap_secure: bool = True
    instance_id: str = "1"
    active: bool = True

    def __repr__(self) -> str:
        return (
            f"MailboxCredential(id={self.id!r}, email={self.email!r}, "
            f"imap_host={self.imap_host!r}, imap_port={self.imap_port!r})"
        )


@dataclass(frozen=True)
class SyncState:
    """Durable per-mailbox cursor.

    ``last_processed_uid`` is the watermark: the highest uid handled so far.
    """

    mailbox_id: int
    last_processed_uid: int = 0
    initial_sync_completed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @property
    def initial_sync_completed(self) -> bool:
        return self.initial_sync_completed_at is not None

    def with_fields(self, **fields) -> SyncState:
        return replace(self, **fields)
