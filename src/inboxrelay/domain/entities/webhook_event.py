from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from inboxrelay.domain.entities.email_message import ParsedEmail


@dataclass(frozen=True)
class WebhookEvent:
    """Event posted to the downstream sink for one newly stored message."""

    mailbox_id: int
    uid: int
    client_id: str
    sender: Optional[str]
    to: Optional[str]
    subject: Optional[str]
    message_id: Optional[str]
    date: Optional[datetime]
    original_from: Optional[str]
    text: Optional[str]
    html: Optional[str]

    @classmethod
    def from_email(cls, mailbox_id: int, client_id: str, uid: int, msg: ParsedEmail) -> WebhookEvent:
        return cls(
            mailbox_id=mailbox_id,
            uid=uid,
            client_id=client_id,
            sender=msg.sender.address if msg.sender else None,
            to=msg.first_recipient,
            subject=msg.subject,
            message_id=msg.message_id,
            date=msg.date,
            original_from=msg.original_from,
            text=msg.text,
            html=msg.html,
        )

    @property
    def dedup_key(self) -> str:
        # Fall back to the mailbox position when the Message-ID header is missing
        return self.message_id or f"{self.mailbox_id}:{self.uid}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "message_id": self.message_id,
            "date": self.date.isoformat() if self.date else None,
            "original_from": self.original_from,
            "text": self.text,
            "html": self.html,
        }
