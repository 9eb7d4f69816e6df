from __future__ import annotations

from typing import Iterator, Optional

from inboxrelay.application.mailbox_session import MailboxSession


class SessionTable:
    """Managed sessions keyed by mailbox id.

    Written only by the reconciler; the poll scheduler and the status API
    read it. Iteration works on a copy so readers never see the dict change
    size underneath them.
    """

    def __init__(self) -> None:
        self._sessions: dict[int, MailboxSession] = {}

    def __contains__(self, mailbox_id: object) -> bool:
        return mailbox_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[MailboxSession]:
        return iter(list(self._sessions.values()))

    def get(self, mailbox_id: int) -> Optional[MailboxSession]:
        return self._sessions.get(mailbox_id)

    def ids(self) -> set[int]:
        return set(self._sessions)

    def add(self, session: MailboxSession) -> None:
        self._sessions[session.id] = session

    def remove(self, mailbox_id: int) -> Optional[MailboxSession]:
        return self._sessions.pop(mailbox_id, None)
