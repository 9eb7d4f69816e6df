from __future__ import annotations

import asyncio
import imaplib
import re
from typing import AsyncIterator, Callable, Optional, TypeVar

from loguru import logger

from inboxrelay.application.ports.email_source import (
    ConnectionEvent,
    ConnectionObserver,
    ImapCommandError,
    MailboxLockTimeout,
    MailboxStatus,
    RawEmail,
)
from inboxrelay.domain.entities.mailbox import MailboxCredential
from inboxrelay.infrastructure.email.providers.imap.auth import ImapAuthenticator

T = TypeVar("T")

_STATUS_MESSAGES = re.compile(rb"MESSAGES (\d+)")
_STATUS_UIDNEXT = re.compile(rb"UIDNEXT (\d+)")

# Transport-level failures; IMAP4.error alone is a protocol answer and leaves the socket usable
TRANSPORT_ERRORS = (imaplib.IMAP4.abort, OSError)


class _HeldLock:
    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._lock.release()


def _select(conn: imaplib.IMAP4, mailbox: str) -> MailboxStatus:
    typ, data = conn.select(mailbox, readonly=True)
    if typ != "OK":
        raise ImapCommandError(f"Failed to select folder {mailbox}")
    exists = int(data[0]) if data and data[0] else 0

    # SELECT normally reports UIDNEXT as a response code; STATUS is the fallback
    _, uidnext = conn.response("UIDNEXT")
    if uidnext and uidnext[0]:
        return MailboxStatus(exists=exists, uid_next=int(uidnext[0]))

    typ, data = conn.status(mailbox, "(MESSAGES UIDNEXT)")
    if typ != "OK" or not data or not data[0]:
        raise ImapCommandError(f"STATUS failed for {mailbox}")
    raw = data[0] if isinstance(data[0], bytes) else str(data[0]).encode()
    m_exists = _STATUS_MESSAGES.search(raw)
    m_uidnext = _STATUS_UIDNEXT.search(raw)
    if m_uidnext is None:
        raise ImapCommandError(f"Server did not report UIDNEXT for {mailbox}")
    return MailboxStatus(
        exists=int(m_exists.group(1)) if m_exists else exists,
        uid_next=int(m_uidnext.group(1)),
    )


class ImapConnection:
    """One authenticated IMAP session, driven from the event loop.

    imaplib is blocking, so every command runs in a worker thread. imaplib
    is not thread-safe: commands and logout for one connection run one at a
    time under a per-connection lock, so logout waits for an in-flight FETCH
    and a command queued behind logout fails with ImapCommandError.

    Transport failures are reported to the observer as an ``error`` event
    followed by a single ``close`` event, then re-raised to the caller.
    """

    def __init__(
        self,
        credential: MailboxCredential,
        on_event: ConnectionObserver,
        *,
        timeout: float = 30.0,
        authenticator: Optional[ImapAuthenticator] = None,
    ) -> None:
        self.credential = credential
        self._on_event = on_event
        self._auth = authenticator or ImapAuthenticator(credential, timeout=timeout)
        self._conn: Optional[imaplib.IMAP4] = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._io = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        self._conn = await asyncio.to_thread(self._auth.login)

    async def open(self, mailbox: str) -> MailboxStatus:
        return await self._call(lambda conn: _select(conn, mailbox))

    async def acquire_lock(self, mailbox: str, timeout: float) -> _HeldLock:
        lock = self._locks.setdefault(mailbox, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError as exc:
            raise MailboxLockTimeout(f"Timed out after {timeout}s waiting for lock on {mailbox}") from exc
        return _HeldLock(lock)

    async def fetch_since(self, uid: int) -> AsyncIterator[RawEmail]:
        """Yield messages with uid >= ``uid`` in ascending order, one FETCH at a time."""
        typ, data = await self._call(lambda conn: conn.uid("SEARCH", None, f"UID {uid}:*"))
        if typ != "OK":
            raise ImapCommandError("UID SEARCH failed")

        uids: list[int] = []
        if data and data[0]:
            uids = sorted(int(x) for x in data[0].split())

        for msg_uid in uids:
            # "n:*" always matches the newest message, even when its uid is below n
            if msg_uid < uid:
                continue

            typ, msg_data = await self._call(lambda conn: conn.uid("FETCH", str(msg_uid), "(RFC822)"))
            if typ != "OK":
                raise ImapCommandError(f"UID FETCH {msg_uid} failed")
            if not msg_data or not isinstance(msg_data[0], tuple):
                logger.warning(f"UID {msg_uid} vanished before it could be fetched ({self.credential.email})")
                continue

            yield RawEmail(uid=msg_uid, rfc822_bytes=msg_data[0][1])

    async def logout(self) -> None:
        async with self._io:
            conn, self._conn = self._conn, None
            try:
                if conn is not None:
                    await asyncio.to_thread(conn.logout)
            finally:
                self._mark_closed()

    def _require(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise ImapCommandError("IMAP connection is not open")
        return self._conn

    async def _call(self, fn: Callable[[imaplib.IMAP4], T]) -> T:
        async with self._io:
            conn = self._require()
            try:
                return await asyncio.to_thread(fn, conn)
            except TRANSPORT_ERRORS as exc:
                self._fail(exc)
                raise

    def _fail(self, exc: BaseException) -> None:
        self._on_event(ConnectionEvent(kind="error", connection=self, error=exc))
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.shutdown()
            except OSError:
                pass
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_event(ConnectionEvent(kind="close", connection=self))


def imap_connection_factory(timeout: float = 30.0):
    """Build the factory a mailbox session uses to open its connection."""

    def factory(credential: MailboxCredential, on_event: ConnectionObserver) -> ImapConnection:
        return ImapConnection(credential, on_event, timeout=timeout)

    return factory
