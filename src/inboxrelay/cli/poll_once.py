"""One-shot ingestion: reconcile, poll every assigned mailbox once, exit."""

from __future__ import annotations

import argparse
import asyncio

import psycopg
from loguru import logger

from inboxrelay.application.mailbox_session import make_session_factory
from inboxrelay.application.reconciler import MailboxReconciler
from inboxrelay.application.session_table import SessionTable
from inboxrelay.infrastructure.email.providers.imap.client import imap_connection_factory
from inboxrelay.infrastructure.logging_config import configure_logging
from inboxrelay.infrastructure.postgres_client import PostgresClientWrapper, postgres_lifespan
from inboxrelay.infrastructure.settings import Settings, get_settings
from inboxrelay.infrastructure.stores import PostgresMailboxStore
from inboxrelay.infrastructure.webhook import WebhookDispatcher


async def poll_once(reconciler: MailboxReconciler, sessions: SessionTable) -> int:
    """Poll each managed session once. Returns the number of newly stored emails."""
    result = await reconciler.reconcile_once()
    if result is None:
        raise RuntimeError("Could not fetch assigned mailboxes")

    total = 0
    try:
        for session in sessions:
            if session.connection is None:
                # connect() already ran during reconciliation and failed; one more try
                await session.connect()
            stats = await session.poll_for_new_emails()
            count = stats.inserted if stats else 0
            total += count
            last_uid = session.sync_state.last_processed_uid if session.sync_state else "-"
            print(f"{session.credential.email}: {count} new email(s), last UID {last_uid}")
    finally:
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
    return total


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    if args.no_webhook:
        settings = settings.model_copy(update={"webhook_url": None})

    try:
        async with postgres_lifespan(settings) as postgres:
            return await _poll(settings, postgres, args.instance_id or settings.instance_id)
    except psycopg.OperationalError as e:
        logger.error(f"Failed to connect to PostgreSQL: {e}")
        return 1


async def _poll(settings: Settings, postgres: PostgresClientWrapper, instance_id: str) -> int:
    store = PostgresMailboxStore(postgres)
    dispatcher = WebhookDispatcher.from_settings(settings)
    sessions = SessionTable()
    reconciler = MailboxReconciler(
        store=store,
        sessions=sessions,
        session_factory=make_session_factory(settings, store, dispatcher, imap_connection_factory(settings.imap_timeout_seconds)),
        instance_id=instance_id,
    )

    print(f"Polling mailboxes assigned to instance {instance_id}")
    print(f"Webhook forwarding: {'enabled' if dispatcher.enabled else 'disabled'}")
    try:
        total = await poll_once(reconciler, sessions)
    except RuntimeError as e:
        logger.error(str(e))
        return 1
    finally:
        await dispatcher.aclose()

    print(f"Stored {total} new email(s) across {len(sessions)} mailbox(es)")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Poll the mailboxes assigned to an instance once")
    parser.add_argument("--instance-id", default=None, help="Override INSTANCE_ID")
    parser.add_argument("--no-webhook", action="store_true", help="Store new emails without forwarding them")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    return asyncio.run(_run(settings, args))


if __name__ == "__main__":
    raise SystemExit(main())
