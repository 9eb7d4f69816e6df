from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class Address:
    address: Optional[str]
    name: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return {"address": self.address, "name": self.name}


@dataclass(frozen=True)
class ParsedEmail:
    message_id: Optional[str]
    subject: Optional[str]
    sender: Optional[Address]
    recipients: list[Address]
    text: Optional[str]
    html: Optional[str]
    date: Optional[datetime]
    original_from: Optional[str]  # Return-Path address, when present
    has_attachments: bool = False
    headers: Mapping[str, list[str]] = field(default_factory=dict)

    @classmethod
    def unparsed(cls) -> ParsedEmail:
        """Placeholder for a message whose bytes could not be parsed."""
        return cls(
            message_id=None,
            subject=None,
            sender=None,
            recipients=[],
            text=None,
            html=None,
            date=None,
            original_from=None,
        )

    @property
    def first_recipient(self) -> Optional[str]:
        return self.recipients[0].address if self.recipients else None


@dataclass(frozen=True)
class StoredEmail:
    """Row written to the email table; unique on (mailbox_id, uid)."""

    mailbox_id: int
    email: str
    uid: int
    message: ParsedEmail

    def to_record(self) -> dict[str, Any]:
        msg = self.message
        return {
            "mailbox_id": self.mailbox_id,
            "email": self.email,
            "message_id": msg.message_id,
            "uid": self.uid,
            "sender": msg.sender.as_dict() if msg.sender else None,
            "recipients": [r.as_dict() for r in msg.recipients],
            "subject": msg.subject,
            "body_text": msg.text,
            "body_html": msg.html,
            "received_at": msg.date,
            "has_attachments": msg.has_attachments,
            "original_from": msg.original_from,
            "raw_headers": dict(msg.headers),
        }
