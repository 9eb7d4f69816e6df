from __future__ import annotations

import imaplib

from inboxrelay.domain.entities.mailbox import MailboxCredential


class ImapAuthenticator:
    """
    Responsible ONLY for establishing an authenticated IMAP connection.
    No folder logic, no fetching, no parsing.
    """

    def __init__(self, credential: MailboxCredential, timeout: float = 30.0) -> None:
        self.credential = credential
        self.timeout = timeout

    def login(self) -> imaplib.IMAP4:
        """
        Returns an authenticated connection: IMAPS when ``imap_secure`` is set,
        plain IMAP otherwise. Blocking; callers run it off the event loop.
        """
        cred = self.credential
        if cred.imap_secure:
            conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(host=cred.imap_host, port=cred.imap_port, timeout=self.timeout)
        else:
            conn = imaplib.IMAP4(host=cred.imap_host, port=cred.imap_port, timeout=self.timeout)
        try:
            conn.login(cred.email, cred.password)
        except Exception:
            conn.shutdown()
            raise
        return conn
