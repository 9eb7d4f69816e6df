"""Mailbox ingestion worker - watches the mailboxes assigned to this instance."""

from __future__ import annotations

import asyncio
import contextlib
import signal

import uvicorn
from loguru import logger

from inboxrelay.api.main import create_app
from inboxrelay.application.mailbox_session import make_session_factory
from inboxrelay.application.poll_scheduler import PollScheduler
from inboxrelay.application.ports.email_source import MailConnectionFactory
from inboxrelay.application.ports.mailbox_store import MailboxStore
from inboxrelay.application.reconciler import MailboxReconciler
from inboxrelay.application.session_table import SessionTable
from inboxrelay.infrastructure.email.providers.imap.client import imap_connection_factory
from inboxrelay.infrastructure.logging_config import configure_logging
from inboxrelay.infrastructure.postgres_client import PostgresClientWrapper
from inboxrelay.infrastructure.settings import Settings, get_settings
from inboxrelay.infrastructure.stores import PostgresMailboxStore
from inboxrelay.infrastructure.webhook import WebhookDispatcher


class _StatusServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class EmailWorker:
    """
    Multi-mailbox ingestion worker.

    Two timers share one event loop: the reconciler adds and removes
    sessions from the assignment table, and the poll scheduler starts polls
    for the sessions that are due.
    """

    def __init__(
        self,
        settings: Settings,
        store: MailboxStore,
        dispatcher: WebhookDispatcher,
        connection_factory: MailConnectionFactory,
        postgres: PostgresClientWrapper | None = None,
    ):
        self.settings = settings
        self.postgres = postgres
        self.sessions = SessionTable()
        self.reconciler = MailboxReconciler(
            store=store,
            sessions=self.sessions,
            session_factory=make_session_factory(settings, store, dispatcher, connection_factory),
            instance_id=settings.instance_id,
            interval=settings.reconcile_interval_seconds,
        )
        self.poller = PollScheduler(self.sessions, tick=settings.poll_tick_seconds)
        self._stop: asyncio.Event | None = None
        self._status_server: _StatusServer | None = None

    def _handle_shutdown(self, signum: int) -> None:
        """Handle graceful shutdown."""
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
        if self._stop is not None:
            self._stop.set()

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> int:
        """Run until a shutdown signal arrives."""
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._handle_shutdown, sig)

        s = self.settings
        logger.info(f"Worker starting for instance {s.instance_id}")
        logger.info(
            f"Reconcile every {s.reconcile_interval_seconds:g}s, poll tick {s.poll_tick_seconds:g}s, "
            f"poll interval {s.poll_interval_seconds:g}s + up to {s.poll_jitter_seconds:g}s jitter"
        )
        if not s.webhook_url:
            logger.warning("WEBHOOK_URL not set, new emails will be stored but not forwarded")

        tasks = [
            asyncio.create_task(self.reconciler.run(self._stop), name="reconciler"),
            asyncio.create_task(self.poller.run(self._stop), name="poll-scheduler"),
        ]
        if s.status_api_enabled:
            config = uvicorn.Config(create_app(self.sessions, s, self.postgres), host=s.api_host, port=s.api_port, log_level="warning")
            self._status_server = _StatusServer(config)
            tasks.append(asyncio.create_task(self._status_server.serve(), name="status-api"))
            logger.info(f"Status API listening on {s.api_host}:{s.api_port}")

        await self._stop.wait()
        await self.shutdown(tasks)
        return 0

    async def shutdown(self, tasks: list[asyncio.Task]) -> None:
        logger.info("Closing mailbox connections...")
        if self._status_server is not None:
            self._status_server.should_exit = True

        for task in tasks:
            if task.get_name() != "status-api":
                task.cancel()

        grace = self.settings.shutdown_grace_seconds

        async def close_all() -> None:
            await self.poller.drain(grace / 2)
            await asyncio.gather(*(session.close() for session in self.sessions), return_exceptions=True)

        try:
            await asyncio.wait_for(close_all(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Shutdown grace period of {grace:g}s elapsed with connections still open")

        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Worker shutdown complete ({len(self.sessions)} session(s) closed)")


async def _run(settings: Settings) -> int:
    postgres = PostgresClientWrapper(settings)
    try:
        await postgres.connect()
        if settings.postgres_setup_schema:
            await postgres.setup_schema()
    except Exception as e:
        logger.error(f"Failed to initialize infrastructure: {e}")
        return 1

    dispatcher = WebhookDispatcher.from_settings(settings)
    worker = EmailWorker(
        settings=settings,
        store=PostgresMailboxStore(postgres),
        dispatcher=dispatcher,
        connection_factory=imap_connection_factory(settings.imap_timeout_seconds),
        postgres=postgres,
    )
    try:
        return await worker.run()
    finally:
        await dispatcher.aclose()
        await postgres.disconnect()


def main() -> int:
    """Entry point for the ingestion worker."""
    settings = get_settings()
    configure_logging(settings)

    logger.info("=" * 60)
    logger.info(f"{settings.app_name} worker v{settings.app_version}")
    logger.info("=" * 60)

    return asyncio.run(_run(settings))


if __name__ == "__main__":
    raise SystemExit(main())
