"""Domain models and entities."""

from inboxrelay.domain.entities.email_message import Address, ParsedEmail, StoredEmail
from inboxrelay.domain.entities.mailbox import MailboxCredential, SyncState
from inboxrelay.domain.entities.webhook_event import WebhookEvent

__all__ = [
    "Address",
    "ParsedEmail",
    "StoredEmail",
    "MailboxCredential",
    "SyncState",
    "WebhookEvent",
]
