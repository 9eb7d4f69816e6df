from __future__ import annotations

from email.message import Message
from typing import Iterator


def iter_attachment_parts(em: Message) -> Iterator[Message]:
    for part in em.walk():
        if part.is_multipart():
            continue

        filename = part.get_filename()
        disp = (part.get("Content-Disposition") or "").lower()

        # named inline parts count too
        if not filename and "attachment" not in disp:
            continue

        yield part


def has_attachments(em: Message) -> bool:
    return next(iter_attachment_parts(em), None) is not None
