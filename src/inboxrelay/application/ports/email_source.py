from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Literal, Optional, Protocol

from inboxrelay.domain.entities.mailbox import MailboxCredential


class MailboxLockTimeout(TimeoutError):
    """The exclusive mailbox lock could not be acquired in time."""


class ImapCommandError(RuntimeError):
    """An IMAP command was answered with something other than OK."""


@dataclass(frozen=True)
class RawEmail:
    uid: int
    rfc822_bytes: bytes


@dataclass(frozen=True)
class MailboxStatus:
    exists: int
    uid_next: int

    @property
    def highest_uid(self) -> int:
        # UIDNEXT is a prediction; with an empty mailbox there is nothing to skip
        return self.uid_next - 1 if self.exists else 0


@dataclass(frozen=True)
class ConnectionEvent:
    kind: Literal["error", "close"]
    connection: "MailConnection"
    error: Optional[BaseException] = None


ConnectionObserver = Callable[[ConnectionEvent], None]


class MailboxLock(Protocol):
    def release(self) -> None: ...


class MailConnection(Protocol):
    """Capability interface the mailbox session depends on."""

    @property
    def closed(self) -> bool: ...

    async def connect(self) -> None: ...

    async def open(self, mailbox: str) -> MailboxStatus: ...

    async def acquire_lock(self, mailbox: str, timeout: float) -> MailboxLock: ...

    def fetch_since(self, uid: int) -> AsyncIterator[RawEmail]: ...

    async def logout(self) -> None: ...


class MailConnectionFactory(Protocol):
    def __call__(self, credential: MailboxCredential, on_event: ConnectionObserver) -> MailConnection: ...
