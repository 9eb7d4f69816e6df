"""Persist newly fetched emails and forward them to the webhook sink."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from inboxrelay.application.ports.email_source import RawEmail
from inboxrelay.application.ports.mailbox_store import MailboxStore
from inboxrelay.application.recent_deliveries import RecentDeliveries
from inboxrelay.domain.entities.email_message import ParsedEmail, StoredEmail
from inboxrelay.domain.entities.mailbox import MailboxCredential
from inboxrelay.domain.entities.webhook_event import WebhookEvent
from inboxrelay.infrastructure.email.providers.imap.mapper import parse_email
from inboxrelay.infrastructure.webhook.dispatcher import WebhookDispatcher


@dataclass
class IngestStats:
    """Counters for one poll."""

    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    skipped: int = 0  # already delivered recently, not posted again
    unparseable: int = 0
    last_uid: Optional[int] = None


class IngestEmailUseCase:
    """Ingest the messages of one poll, in ascending uid order.

    Flow per message:
    1. Parse RFC822 into structured fields
    2. Insert-or-ignore on (mailbox_id, uid)
    3. Advance the watermark to the uid, whether the row was new or not
    4. Dispatch a webhook only when the row was newly inserted

    A message that fails to parse is stored without parsed fields and is
    not dispatched, so it cannot hold the watermark back.

    A duplicate never stalls the cursor. A store error propagates and leaves
    the watermark on the previous message, so the next poll retries it.
    """

    def __init__(
        self,
        credential: MailboxCredential,
        store: MailboxStore,
        dispatcher: WebhookDispatcher,
        recent: RecentDeliveries,
    ) -> None:
        self.credential = credential
        self.store = store
        self.dispatcher = dispatcher
        self.recent = recent
        self._log = logger.bind(mailbox_id=credential.id, email=credential.email)

    async def run(
        self,
        messages: AsyncIterator[RawEmail],
        min_uid: int,
        advance: Callable[[int], Awaitable[None]],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> IngestStats:
        stats = IngestStats()

        async for raw in messages:
            if should_stop():
                self._log.info(f"Session closed, stopping ingestion before UID {raw.uid}")
                break
            if raw.uid < min_uid:
                continue

            stats.fetched += 1
            msg = self._parse(raw)
            inserted = await self._store(raw, msg if msg is not None else ParsedEmail.unparsed())
            await advance(raw.uid)
            stats.last_uid = raw.uid

            if not inserted:
                stats.duplicates += 1
                continue

            stats.inserted += 1
            if msg is None:
                stats.unparseable += 1
                continue

            event = WebhookEvent.from_email(self.credential.id, self.credential.email, raw.uid, msg)
            result = await self.dispatcher.dispatch(event, self.recent)
            if result.skipped:
                stats.skipped += 1
            elif result.success:
                stats.delivered += 1
            elif self.dispatcher.enabled:
                stats.delivery_failures += 1

        return stats

    def _parse(self, raw: RawEmail) -> Optional[ParsedEmail]:
        try:
            return parse_email(raw.rfc822_bytes)
        except Exception as e:
            self._log.bind(uid=raw.uid, error=str(e), error_type=type(e).__name__).error(
                f"Failed to parse email UID {raw.uid}, storing it without parsed fields"
            )
            return None

    async def _store(self, raw: RawEmail, msg: ParsedEmail) -> bool:
        """Insert one message; False when the row already exists."""
        stored = StoredEmail(
            mailbox_id=self.credential.id,
            email=self.credential.email,
            uid=raw.uid,
            message=msg,
        )

        if not await self.store.insert_email(stored):
            self._log.bind(uid=raw.uid).warning(f"Duplicate email (id: {msg.message_id}), already stored")
            return False

        self._log.bind(uid=raw.uid, has_attachments=msg.has_attachments).info(
            f"Stored email UID {raw.uid}: {(msg.subject or '')[:50]}"
        )
        return True
