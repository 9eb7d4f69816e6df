from __future__ import annotations

from typing import Any, Protocol

from inboxrelay.domain.entities.email_message import StoredEmail
from inboxrelay.domain.entities.mailbox import MailboxCredential, SyncState


class MailboxStoreError(RuntimeError):
    """Raised when the credential/sync store cannot complete an operation."""


class MailboxStore(Protocol):
    async def fetch_assigned_mailboxes(self, instance_id: str) -> list[MailboxCredential]: ...

    async def get_or_create_sync_state(self, credential: MailboxCredential) -> SyncState: ...

    async def update_sync_state(self, mailbox_id: int, **fields: Any) -> None: ...

    async def insert_email(self, stored: StoredEmail) -> bool:
        """Insert-or-ignore on (mailbox_id, uid). True when newly inserted."""
        ...
