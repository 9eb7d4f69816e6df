"""Keeps the managed session table in sync with the mailbox assignment table."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from inboxrelay.application.mailbox_session import SessionFactory
from inboxrelay.application.ports.mailbox_store import MailboxStore
from inboxrelay.application.session_table import SessionTable


@dataclass
class ReconcileResult:
    added: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class MailboxReconciler:
    """Diffs assigned mailboxes against the session table.

    Sessions are matched by mailbox id only, so an edited credential on an
    already managed mailbox is not picked up until the process restarts.
    """

    def __init__(
        self,
        store: MailboxStore,
        sessions: SessionTable,
        session_factory: SessionFactory,
        instance_id: str,
        interval: float = 60.0,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.session_factory = session_factory
        self.instance_id = instance_id
        self.interval = interval

    async def reconcile_once(self) -> ReconcileResult | None:
        """Run one cycle. None when the assignment fetch failed (nothing changed)."""
        logger.info("Reconciling mailboxes")

        try:
            assigned = await self.store.fetch_assigned_mailboxes(self.instance_id)
        except Exception as e:
            logger.bind(error=str(e)).error("Failed to fetch assigned mailboxes")
            return None

        result = ReconcileResult()
        assigned_ids = {cred.id for cred in assigned}

        for credential in assigned:
            if credential.id in self.sessions:
                continue

            logger.bind(mailbox_id=credential.id, email=credential.email).info(f"New mailbox: {credential.email}")
            session = self.session_factory(credential)
            if not await session.initialize():
                # Not added, so the next cycle tries again from scratch
                result.failed.append(credential.id)
                continue

            self.sessions.add(session)
            result.added.append(credential.id)
            await session.connect()

        for mailbox_id in self.sessions.ids() - assigned_ids:
            session = self.sessions.get(mailbox_id)
            logger.bind(mailbox_id=mailbox_id).info("Removing deactivated mailbox")
            if session is not None:
                await session.close()
            self.sessions.remove(mailbox_id)
            result.removed.append(mailbox_id)

        return result

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.reconcile_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
