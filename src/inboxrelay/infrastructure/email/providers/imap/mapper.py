from __future__ import annotations

from datetime import datetime
from email import policy
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Optional

from inboxrelay.domain.entities.email_message import Address, ParsedEmail
from inboxrelay.infrastructure.email.rfc822 import has_attachments


def _parse_header(em: MimeMessage, name: str, raw: str) -> str:
    try:
        return str(em.policy.header_fetch_parse(name, raw))
    except Exception:
        # The structured header parser raises on some malformed values,
        # e.g. IndexError for "Message-ID: <[>". Keep the raw text.
        return str(raw)


def _values(em: MimeMessage, name: str) -> list[str]:
    wanted = name.lower()
    return [_parse_header(em, key, raw) for key, raw in em.raw_items() if key.lower() == wanted]


def _addresses(em: MimeMessage, name: str) -> list[Address]:
    out: list[Address] = []
    for display, addr in getaddresses(_values(em, name)):
        if not addr and not display:
            continue
        out.append(Address(address=addr or None, name=display or None))
    return out


def _header(em: MimeMessage, name: str) -> Optional[str]:
    values = _values(em, name)
    if not values:
        return None
    return values[0].strip() or None


def _decode(part: MimeMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        # Unknown or lying charset declarations
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _body(em: MimeMessage, subtype: str) -> Optional[str]:
    part = em.get_body(preferencelist=(subtype,))
    if part is None:
        return None
    return _decode(part)


def _date(em: MimeMessage) -> Optional[datetime]:
    value = _header(em, "Date")
    if value is None:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def _headers(em: MimeMessage) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for key, raw in em.raw_items():
        out.setdefault(key.lower(), []).append(_parse_header(em, key, raw))
    return out


def parse_email(rfc822_bytes: bytes) -> ParsedEmail:
    """Map RFC822 bytes to a ParsedEmail.

    Header access never raises: a header the structured parser rejects is
    returned as its raw text.
    """
    em = BytesParser(policy=policy.default).parsebytes(rfc822_bytes)

    senders = _addresses(em, "From")
    return_path = _addresses(em, "Return-Path")

    return ParsedEmail(
        message_id=_header(em, "Message-ID"),
        subject=_header(em, "Subject"),
        sender=senders[0] if senders else None,
        recipients=_addresses(em, "To"),
        text=_body(em, "plain"),
        html=_body(em, "html"),
        date=_date(em),
        original_from=return_path[0].address if return_path else None,
        has_attachments=has_attachments(em),
        headers=_headers(em),
    )
