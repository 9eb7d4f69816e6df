"""PostgreSQL implementation of the mailbox store."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import psycopg
from loguru import logger
from psycopg import sql
from psycopg.types.json import Jsonb

from inboxrelay.application.ports.mailbox_store import MailboxStore, MailboxStoreError
from inboxrelay.domain.entities.email_message import StoredEmail
from inboxrelay.domain.entities.mailbox import DEFAULT_IMAP_PORT, MailboxCredential, SyncState
from inboxrelay.infrastructure.postgres_client import PostgresClientWrapper

SYNC_STATE_FIELDS = frozenset({"last_processed_uid", "initial_sync_completed_at", "last_synced_at"})

INSERT_EMAIL_SQL = """
    INSERT INTO emails (
        mailbox_id, email, message_id, uid, sender, recipients, subject,
        body_text, body_html, received_at, has_attachments, original_from, raw_headers
    ) VALUES (
        %(mailbox_id)s, %(email)s, %(message_id)s, %(uid)s, %(sender)s, %(recipients)s, %(subject)s,
        %(body_text)s, %(body_html)s, %(received_at)s, %(has_attachments)s, %(original_from)s, %(raw_headers)s
    )
    ON CONFLICT (mailbox_id, uid) DO NOTHING
    RETURNING id
"""


def _pg_clean(value: Any) -> Any:
    # PostgreSQL text and jsonb cannot hold NUL; one stray byte must not wedge the mailbox
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {_pg_clean(k): _pg_clean(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_pg_clean(v) for v in value]
    return value


class PostgresMailboxStore(MailboxStore):
    """Mailbox assignments, sync cursors and stored emails in PostgreSQL."""

    def __init__(self, client: PostgresClientWrapper):
        self.client = client

    @asynccontextmanager
    async def _cursor(self, operation: str) -> AsyncIterator[psycopg.AsyncCursor]:
        try:
            conn = await self.client.get_connection()
            async with conn.cursor() as cur:
                yield cur
        except psycopg.Error as e:
            raise MailboxStoreError(f"{operation} failed: {e}") from e

    async def fetch_assigned_mailboxes(self, instance_id: str) -> list[MailboxCredential]:
        async with self._cursor("fetch_assigned_mailboxes") as cur:
            await cur.execute(
                """SELECT id, email, password, imap_host, imap_port, imap_secure, instance_id, active
                   FROM mailboxes
                   WHERE active AND instance_id = %s
                   ORDER BY id""",
                (str(instance_id),),
            )
            rows = await cur.fetchall()

        return [
            MailboxCredential(
                id=row["id"],
                email=row["email"],
                password=row["password"],
                imap_host=row["imap_host"],
                imap_port=row["imap_port"] or DEFAULT_IMAP_PORT,
                imap_secure=bool(row["imap_secure"]),
                instance_id=row["instance_id"],
                active=row["active"],
            )
            for row in rows
        ]

    async def get_or_create_sync_state(self, credential: MailboxCredential) -> SyncState:
        async with self._cursor("get_or_create_sync_state") as cur:
            await cur.execute(
                """INSERT INTO mailbox_sync_status (mailbox_id, email, last_processed_uid)
                   VALUES (%s, %s, 0)
                   ON CONFLICT (mailbox_id) DO NOTHING""",
                (credential.id, credential.email),
            )
            if cur.rowcount == 1:
                logger.bind(mailbox_id=credential.id, email=credential.email).info("Created initial sync state")

            await cur.execute(
                """SELECT mailbox_id, last_processed_uid, initial_sync_completed_at, last_synced_at
                   FROM mailbox_sync_status WHERE mailbox_id = %s""",
                (credential.id,),
            )
            row = await cur.fetchone()

        if row is None:
            raise MailboxStoreError(f"Sync state for mailbox {credential.id} vanished after insert")

        return SyncState(
            mailbox_id=row["mailbox_id"],
            last_processed_uid=row["last_processed_uid"],
            initial_sync_completed_at=row["initial_sync_completed_at"],
            last_synced_at=row["last_synced_at"],
        )

    async def update_sync_state(self, mailbox_id: int, **fields: Any) -> None:
        unknown = set(fields) - SYNC_STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync state fields: {sorted(unknown)}")

        fields.setdefault("last_synced_at", datetime.now(timezone.utc))

        assignments = []
        for name in fields:
            if name == "last_processed_uid":
                # The watermark only moves forward, whatever the caller sends
                assignments.append(
                    sql.SQL("{col} = GREATEST({col}, {val})").format(
                        col=sql.Identifier(name), val=sql.Placeholder(name)
                    )
                )
            else:
                assignments.append(
                    sql.SQL("{col} = {val}").format(col=sql.Identifier(name), val=sql.Placeholder(name))
                )

        query = sql.SQL("UPDATE mailbox_sync_status SET {assignments} WHERE mailbox_id = {mailbox_id}").format(
            assignments=sql.SQL(", ").join(assignments),
            mailbox_id=sql.Placeholder("mailbox_id"),
        )

        async with self._cursor("update_sync_state") as cur:
            await cur.execute(query, {**fields, "mailbox_id": mailbox_id})
            if cur.rowcount == 0:
                raise MailboxStoreError(f"No sync state row for mailbox {mailbox_id}")

    async def insert_email(self, stored: StoredEmail) -> bool:
        record = _pg_clean(stored.to_record())
        params = {
            **record,
            "sender": Jsonb(record["sender"]) if record["sender"] is not None else None,
            "recipients": Jsonb(record["recipients"]),
            "raw_headers": Jsonb(record["raw_headers"]),
        }

        async with self._cursor("insert_email") as cur:
            await cur.execute(INSERT_EMAIL_SQL, params)
            row = await cur.fetchone()
        return row is not None
