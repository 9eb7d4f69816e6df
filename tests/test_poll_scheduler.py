import asyncio

from conftest import make_credential

from inboxrelay.application.mailbox_session import MailboxSession, SessionConfig
from inboxrelay.application.poll_scheduler import PollScheduler
from inboxrelay.application.session_table import SessionTable


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _table(store, dispatcher, server, *ids):
    table = SessionTable()
    config = SessionConfig(poll_interval=20, poll_jitter=0)
    for mailbox_id in ids:
        session = MailboxSession(make_credential(mailbox_id), store, dispatcher, server.factory, config)
        await session.initialize()
        await session.connect()
        table.add(session)
    return table


async def test_tick_polls_only_due_sessions(store, dispatcher, server):
    table = await _table(store, dispatcher, server, 1, 2)
    clock = _Clock(1000.0)
    table.get(2).last_checked_at = 990.0
    scheduler = PollScheduler(table, tick=5, clock=clock)

    assert scheduler.tick() == 1
    await scheduler.drain(1)

    assert table.get(1).last_checked_at > 0
    assert server.fetches == [1]

    for session in table:
        await session.close()


async def test_tick_skips_polling_and_closed_sessions(store, dispatcher, server):
    table = await _table(store, dispatcher, server, 1, 2)
    await table.get(1).close()
    table.get(2)._polling = True
    scheduler = PollScheduler(table, tick=5, clock=_Clock())

    assert scheduler.tick() == 0

    table.get(2)._polling = False
    await table.get(2).close()


async def test_polled_session_is_not_due_until_interval_passes(store, dispatcher, server):
    table = await _table(store, dispatcher, server, 1)
    session = table.get(1)
    clock = _Clock()
    scheduler = PollScheduler(table, tick=5, clock=clock)

    scheduler.tick()
    await scheduler.drain(1)
    session.last_checked_at = clock.now

    clock.now += 10
    assert scheduler.tick() == 0
    clock.now += 11
    assert scheduler.tick() == 1
    await scheduler.drain(1)

    await session.close()


async def test_drain_cancels_slow_polls(store, dispatcher, server):
    table = await _table(store, dispatcher, server, 1)
    server.add(1, 2)
    server.fetch_delay = 5
    scheduler = PollScheduler(table, tick=5, clock=_Clock())

    scheduler.tick()
    await asyncio.sleep(0.01)
    await scheduler.drain(0.01)
    await asyncio.sleep(0.01)

    assert scheduler.in_flight == 0
    await table.get(1).close()


async def test_run_until_stopped(store, dispatcher, server):
    table = await _table(store, dispatcher, server, 1)
    table.get(1).last_checked_at = -100.0
    scheduler = PollScheduler(table, tick=0.01)
    stop = asyncio.Event()

    task = asyncio.create_task(scheduler.run(stop))
    await asyncio.sleep(0.03)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    await scheduler.drain(1)

    assert server.fetches
    await table.get(1).close()
