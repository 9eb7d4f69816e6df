"""Connection lifecycle and polling for one mailbox."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from inboxrelay.application.ports.email_source import (
    ConnectionEvent,
    MailConnection,
    MailConnectionFactory,
)
from inboxrelay.application.ports.mailbox_store import MailboxStore
from inboxrelay.application.recent_deliveries import RecentDeliveries
from inboxrelay.application.use_cases.ingest_email import IngestEmailUseCase, IngestStats
from inboxrelay.domain.entities.mailbox import MailboxCredential, SyncState
from inboxrelay.infrastructure.settings import Settings
from inboxrelay.infrastructure.webhook.dispatcher import WebhookDispatcher


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionConfig:
    mailbox: str = "INBOX"
    poll_interval: float = 20.0
    poll_jitter: float = 5.0
    reconnect_delay: float = 30.0
    lock_timeout: float = 30.0
    recent_cache_size: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            mailbox=settings.imap_mailbox,
            poll_interval=settings.poll_interval_seconds,
            poll_jitter=settings.poll_jitter_seconds,
            reconnect_delay=settings.reconnect_delay_seconds,
            lock_timeout=settings.lock_timeout_seconds,
            recent_cache_size=settings.recent_delivery_cache_size,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_uptime(seconds: int) -> str:
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m {seconds % 60}s"


class MailboxSession:
    """Owns one mailbox's IMAP connection and its ingestion cursor.

    Invariants:
    - at most one live connection: ``connect()`` is a no-op while connecting
      or while a connection handle is held
    - at most one poll in flight: the polling flag is taken before the first
      await and released on every exit path
    - the watermark never moves backwards

    A dropped connection is not reconnected eagerly. The next due poll sees
    no handle and calls ``connect()`` instead of fetching. Only a failed
    ``connect()`` schedules a delayed retry on its own.

    ``close()`` is terminal: it is how the reconciler removes a mailbox.
    A closed session refuses to connect, its polls bail out, and a poll that
    is already fetching stops before the next message.
    """

    def __init__(
        self,
        credential: MailboxCredential,
        store: MailboxStore,
        dispatcher: WebhookDispatcher,
        connection_factory: MailConnectionFactory,
        config: SessionConfig = SessionConfig(),
        rng: random.Random | None = None,
    ) -> None:
        self.credential = credential
        self.config = config
        self._store = store
        self._connection_factory = connection_factory

        rng = rng or random.Random()
        self.polling_interval = config.poll_interval + rng.uniform(0, config.poll_jitter)
        self.last_checked_at = 0.0
        self.last_activity_at: Optional[datetime] = None
        self.connection_started_at: Optional[float] = None

        self.sync_state: Optional[SyncState] = None
        self.recent = RecentDeliveries(config.recent_cache_size)
        self._ingest = IngestEmailUseCase(credential, store, dispatcher, self.recent)

        self._connection: Optional[MailConnection] = None
        # Connection whose events we still report; outlives the handle until its close event
        self._watched: Optional[MailConnection] = None
        self._connecting = False
        self._polling = False
        self._closed = False
        self._reconnect_task: Optional[asyncio.Task] = None

        self._log = logger.bind(mailbox_id=credential.id, email=credential.email)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def id(self) -> int:
        return self.credential.id

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        if self._connecting:
            return SessionState.CONNECTING
        if self._connection is not None:
            return SessionState.CONNECTED
        return SessionState.IDLE

    @property
    def connection(self) -> Optional[MailConnection]:
        return self._connection

    @property
    def polling(self) -> bool:
        return self._polling

    @property
    def closed(self) -> bool:
        return self._closed

    def uptime_seconds(self) -> Optional[int]:
        if self._connection is None or self.connection_started_at is None:
            return None
        return int(time.monotonic() - self.connection_started_at)

    def is_due(self, now: float) -> bool:
        return now - self.last_checked_at > self.polling_interval

    @staticmethod
    def _wall_clock(monotonic_at: float) -> Optional[datetime]:
        if not monotonic_at:
            return None
        return _utcnow() - timedelta(seconds=time.monotonic() - monotonic_at)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.credential.id,
            "email": self.credential.email,
            "state": self.state.value,
            "connected": self._connection is not None,
            "polling": self._polling,
            "last_checked_at": self._wall_clock(self.last_checked_at),
            "last_processed_uid": self.sync_state.last_processed_uid if self.sync_state else None,
            "last_activity_at": self.last_activity_at,
            "uptime_seconds": self.uptime_seconds(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Load or create the sync state. False when the store is unavailable."""
        try:
            self.sync_state = await self._store.get_or_create_sync_state(self.credential)
        except Exception as e:
            self._log.bind(error=str(e)).error("Failed to load sync state")
            return False
        return True

    async def connect(self) -> bool:
        if self._closed:
            self._log.debug("Session closed, not connecting")
            return False
        if self._connecting:
            self._log.warning("Connection already in progress, ignoring connect request")
            return False
        if self._connection is not None:
            self._log.warning("Client already exists, refusing a second connection")
            return False
        if self.sync_state is None:
            self._log.error("Sync state not loaded, cannot connect")
            return False

        self._connecting = True
        cred = self.credential
        self._log.bind(provider=cred.imap_host, port=cred.imap_port, secure=cred.imap_secure).info("Connecting to IMAP")

        conn = self._connection_factory(cred, self._handle_connection_event)
        try:
            await conn.connect()
            status = await conn.open(self.config.mailbox)
        except Exception as e:
            self._connecting = False
            self._log.bind(provider=cred.imap_host, error=str(e), error_type=type(e).__name__).error(
                f"Failed to connect, retrying in {self.config.reconnect_delay:g}s"
            )
            await self._logout_quietly(conn)
            self._schedule_reconnect()
            return False

        self._connecting = False
        if self._closed:
            await self._logout_quietly(conn)
            return False

        self._connection = conn
        self._watched = conn
        self.connection_started_at = time.monotonic()
        self.last_activity_at = _utcnow()
        self._log.bind(provider=cred.imap_host, connected_at=self.last_activity_at.isoformat()).info(
            "IMAP connection established"
        )

        if not self.sync_state.initial_sync_completed:
            # Start from what is already there; existing mail is not ingested
            latest_uid = max(status.highest_uid, self.sync_state.last_processed_uid)
            ok = await self._update_sync_state(
                initial_sync_completed_at=_utcnow(),
                last_processed_uid=latest_uid,
            )
            if not ok:
                await self.disconnect()
                return False
            self._log.info(f"Initial sync completed. Last UID: {latest_uid}")

        return True

    async def disconnect(self) -> None:
        """Best-effort close; the handle is always cleared."""
        conn = self._connection
        if conn is None:
            return
        self._connection = None
        self._watched = None
        self.connection_started_at = None
        self._log.info("Disconnecting")
        await self._logout_quietly(conn)

    async def close(self) -> None:
        """Tear down for good (mailbox unassigned or process shutdown)."""
        self._closed = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        await self.disconnect()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_for_new_emails(self) -> Optional[IngestStats]:
        """Fetch, store and forward everything above the watermark.

        Returns the ingest counters when a fetch ran, None otherwise.
        """
        if self._polling:
            self._log.debug("Poll already in flight, skipping")
            return None
        self._polling = True
        try:
            self.last_checked_at = time.monotonic()

            if self._closed:
                return None
            if self._connection is None:
                self._log.info("Client disconnected, reconnecting")
                await self.connect()
                return None
            if self.sync_state is None or not self.sync_state.initial_sync_completed:
                return None

            self.last_activity_at = _utcnow()
            await self._update_sync_state(last_synced_at=self.last_activity_at)
            return await self._fetch_new_emails(self._connection)
        finally:
            self._polling = False

    async def _fetch_new_emails(self, conn: MailConnection) -> Optional[IngestStats]:
        next_uid = self.sync_state.last_processed_uid + 1
        self._log.info(f"Checking for new emails since UID {next_uid}")

        try:
            lock = await conn.acquire_lock(self.config.mailbox, self.config.lock_timeout)
            try:
                self.last_activity_at = _utcnow()
                stats = await self._ingest.run(
                    conn.fetch_since(next_uid),
                    min_uid=next_uid,
                    advance=self._advance_watermark,
                    should_stop=lambda: self._closed,
                )
            finally:
                lock.release()
        except Exception as e:
            if self._closed:
                self._log.bind(error=str(e)).info("Fetch interrupted by session close")
                return None
            self._log.bind(error=str(e), error_type=type(e).__name__).error("Failed to fetch emails")
            await self.disconnect()
            return None

        if stats.fetched:
            self._log.bind(
                inserted=stats.inserted,
                duplicates=stats.duplicates,
                delivered=stats.delivered,
                skipped=stats.skipped,
                unparseable=stats.unparseable,
                last_uid=stats.last_uid,
            ).info(f"{stats.inserted} new email(s)")
        else:
            self._log.info("No new emails")
        return stats

    async def _advance_watermark(self, uid: int) -> None:
        if uid <= self.sync_state.last_processed_uid:
            return
        await self._update_sync_state(last_processed_uid=uid)

    async def _update_sync_state(self, **fields: Any) -> bool:
        # Same stamp the store writes, so memory matches the row
        fields.setdefault("last_synced_at", _utcnow())
        try:
            await self._store.update_sync_state(self.credential.id, **fields)
        except Exception as e:
            self._log.bind(error=str(e), fields=sorted(fields)).error("Failed to update sync status")
            return False
        self.sync_state = self.sync_state.with_fields(**fields)
        return True

    # ------------------------------------------------------------------
    # Connection events and reconnect
    # ------------------------------------------------------------------

    def _handle_connection_event(self, event: ConnectionEvent) -> None:
        # Events from a connection we never adopted, or disconnected on purpose, carry no news
        if event.connection is not self._watched:
            return

        started = self.connection_started_at
        uptime = int(time.monotonic() - started) if started is not None else None
        log = self._log.bind(
            provider=self.credential.imap_host,
            uptime_seconds=uptime,
            last_activity=self.last_activity_at.isoformat() if self.last_activity_at else None,
        )
        if event.kind == "error":
            err = event.error
            log.bind(
                error=str(err),
                error_type=type(err).__name__ if err else None,
                code=getattr(err, "errno", None),
            ).error("IMAP error reported by connection")
            # The close event that follows still needs the start time
            self._connection = None
            return

        log.bind(
            uptime=format_uptime(uptime or 0),
            was_polling=self._polling,
        ).warning("IMAP connection closed unexpectedly")
        self._connection = None
        self._watched = None
        self.connection_started_at = None

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_later(),
            name=f"reconnect-{self.credential.id}",
        )

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.config.reconnect_delay)
        self._reconnect_task = None
        await self.connect()

    async def _logout_quietly(self, conn: MailConnection) -> None:
        try:
            await conn.logout()
        except Exception as e:
            self._log.bind(error=str(e)).debug("Ignoring error while closing IMAP connection")


SessionFactory = Callable[[MailboxCredential], MailboxSession]


def make_session_factory(
    settings: Settings,
    store: MailboxStore,
    dispatcher: WebhookDispatcher,
    connection_factory: MailConnectionFactory,
) -> SessionFactory:
    config = SessionConfig.from_settings(settings)

    def factory(credential: MailboxCredential) -> MailboxSession:
        return MailboxSession(credential, store, dispatcher, connection_factory, config)

    return factory
