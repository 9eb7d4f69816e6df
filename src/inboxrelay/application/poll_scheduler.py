"""Global ticker that starts polls for sessions whose interval has elapsed."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from loguru import logger

from inboxrelay.application.session_table import SessionTable


class PollScheduler:
    """Each tick starts one poll task per due session.

    Polls run as independent tasks so a slow mailbox (long drain, webhook
    retries) never delays the others. Overlap for one session is harmless:
    the session's own single-flight guard turns the second poll into a no-op.
    """

    def __init__(
        self,
        sessions: SessionTable,
        tick: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sessions = sessions
        self.tick_interval = tick
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def tick(self) -> int:
        now = self._clock()
        started = 0
        for session in self.sessions:
            if session.closed or session.polling or not session.is_due(now):
                continue
            task = asyncio.create_task(session.poll_for_new_emails(), name=f"poll-{session.id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_done)
            started += 1
        return started

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Unhandled error in {task.get_name()}")

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    async def drain(self, timeout: float) -> None:
        """Give in-flight polls up to ``timeout`` seconds to finish."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
