from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Any, AsyncIterator

import httpx
import pytest

from inboxrelay.application.mailbox_session import MailboxSession, SessionConfig
from inboxrelay.application.ports.email_source import (
    ConnectionEvent,
    MailboxLockTimeout,
    MailboxStatus,
    RawEmail,
)
from inboxrelay.application.ports.mailbox_store import MailboxStoreError
from inboxrelay.domain.entities.email_message import StoredEmail
from inboxrelay.domain.entities.mailbox import MailboxCredential, SyncState
from inboxrelay.infrastructure.webhook import WebhookDispatcher


def build_rfc822(
    uid: int,
    *,
    subject: str | None = None,
    sender: str = "Alice <alice@example.com>",
    to: str = "client@example.com",
    message_id: str | None = "auto",
    text: str | None = "hello",
    html: str | None = None,
    return_path: str | None = None,
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject if subject is not None else f"Message {uid}"
    msg["Date"] = format_datetime(datetime(2024, 5, 1, 12, 0, uid % 60, tzinfo=timezone.utc))
    if message_id == "auto":
        msg["Message-ID"] = f"<msg-{uid}@example.com>"
    elif message_id is not None:
        msg["Message-ID"] = message_id
    if return_path:
        msg["Return-Path"] = return_path
    if text is not None:
        msg.set_content(text)
    if html is not None:
        if text is None:
            msg.set_content(html, subtype="html")
        else:
            msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


class FakeMailboxStore:
    """In-memory MailboxStore with the same insert-or-ignore semantics as PostgreSQL."""

    def __init__(self, credentials: list[MailboxCredential] | None = None) -> None:
        self.credentials = list(credentials or [])
        self.sync_states: dict[int, SyncState] = {}
        self.emails: dict[tuple[int, int], StoredEmail] = {}
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self.fail_fetch = False
        self.fail_sync_state = False
        self.fail_update = False
        self.fail_insert_uids: set[int] = set()

    async def fetch_assigned_mailboxes(self, instance_id: str) -> list[MailboxCredential]:
        if self.fail_fetch:
            raise MailboxStoreError("database unavailable")
        return [c for c in self.credentials if c.instance_id == instance_id and c.active]

    async def get_or_create_sync_state(self, credential: MailboxCredential) -> SyncState:
        if self.fail_sync_state:
            raise MailboxStoreError("database unavailable")
        return self.sync_states.setdefault(credential.id, SyncState(mailbox_id=credential.id))

    async def update_sync_state(self, mailbox_id: int, **fields: Any) -> None:
        if self.fail_update:
            raise MailboxStoreError("database unavailable")
        self.updates.append((mailbox_id, fields))
        current = self.sync_states.setdefault(mailbox_id, SyncState(mailbox_id=mailbox_id))
        if "last_processed_uid" in fields:
            fields = {**fields, "last_processed_uid": max(current.last_processed_uid, fields["last_processed_uid"])}
        self.sync_states[mailbox_id] = current.with_fields(**fields)

    async def insert_email(self, stored: StoredEmail) -> bool:
        if stored.uid in self.fail_insert_uids:
            raise MailboxStoreError("insert failed")
        key = (stored.mailbox_id, stored.uid)
        if key in self.emails:
            return False
        self.emails[key] = stored
        return True


class _Lock:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    def release(self) -> None:
        self._conn.lock_released += 1


class FakeConnection:
    """Scripted MailConnection. ``messages`` is shared with the server fixture."""

    def __init__(self, server: "FakeServer", credential: MailboxCredential, on_event) -> None:
        self.server = server
        self.credential = credential
        self.on_event = on_event
        self.closed = False
        self.logged_out = False
        self.lock_released = 0

    async def connect(self) -> None:
        self.server.connect_attempts += 1
        if self.server.fail_connect:
            raise ConnectionRefusedError("connection refused")
        if self.server.connect_delay:
            await asyncio.sleep(self.server.connect_delay)

    async def open(self, mailbox: str) -> MailboxStatus:
        uids = sorted(self.server.messages)
        return MailboxStatus(exists=len(uids), uid_next=(uids[-1] + 1) if uids else 1)

    async def acquire_lock(self, mailbox: str, timeout: float) -> _Lock:
        if self.server.lock_timeout:
            raise MailboxLockTimeout(f"Timed out after {timeout}s waiting for lock on {mailbox}")
        return _Lock(self)

    async def fetch_since(self, uid: int) -> AsyncIterator[RawEmail]:
        self.server.fetches.append(uid)
        for msg_uid in sorted(self.server.messages):
            if msg_uid < uid:
                continue
            if self.server.fetch_delay:
                await asyncio.sleep(self.server.fetch_delay)
            yield RawEmail(uid=msg_uid, rfc822_bytes=self.server.messages[msg_uid])

    async def logout(self) -> None:
        self.logged_out = True
        self.closed = True

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the server hanging up: error event, then close."""
        if error is not None:
            self.on_event(ConnectionEvent(kind="error", connection=self, error=error))
        self.closed = True
        self.on_event(ConnectionEvent(kind="close", connection=self))


class FakeServer:
    def __init__(self) -> None:
        self.messages: dict[int, bytes] = {}
        self.connections: list[FakeConnection] = []
        self.fetches: list[int] = []
        self.connect_attempts = 0
        self.fail_connect = False
        self.connect_delay = 0.0
        self.fetch_delay = 0.0
        self.lock_timeout = False

    def add(self, *uids: int, **kwargs) -> None:
        for uid in uids:
            self.messages[uid] = build_rfc822(uid, **kwargs)

    def factory(self, credential: MailboxCredential, on_event) -> FakeConnection:
        conn = FakeConnection(self, credential, on_event)
        self.connections.append(conn)
        return conn


class RecordingSink:
    """httpx transport that records posted payloads and answers from a script."""

    def __init__(self, statuses: list[int] | None = None) -> None:
        self.statuses = list(statuses or [])
        self.payloads: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 400})

    def dispatcher(self, url: str | None = "http://sink.test/hook", **kwargs) -> WebhookDispatcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return WebhookDispatcher(url, client=client, sleep=_no_sleep, **kwargs)


async def _no_sleep(delay: float) -> None:
    return None


def make_credential(mailbox_id: int = 1, email: str | None = None, instance_id: str = "1") -> MailboxCredential:
    return MailboxCredential(
        id=mailbox_id,
        email=email or f"box{mailbox_id}@example.com",
        password="secret",
        imap_host="imap.example.com",
        instance_id=instance_id,
    )


@pytest.fixture
def credential() -> MailboxCredential:
    return make_credential()


@pytest.fixture
def store(credential) -> FakeMailboxStore:
    return FakeMailboxStore([credential])


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def dispatcher(sink):
    d = sink.dispatcher()
    yield d
    await d._client.aclose()


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(poll_interval=20, poll_jitter=0, reconnect_delay=0.01, lock_timeout=1)


@pytest.fixture
async def session(credential, store, dispatcher, server, session_config):
    s = MailboxSession(credential, store, dispatcher, server.factory, session_config)
    yield s
    await s.close()
