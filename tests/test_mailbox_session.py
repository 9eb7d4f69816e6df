import asyncio
import random

from inboxrelay.application.mailbox_session import MailboxSession, SessionConfig, SessionState, format_uptime


async def _connected(session, server, *uids):
    server.add(*uids)
    assert await session.initialize()
    assert await session.connect()
    return server.connections[-1]


async def test_first_connect_bootstraps_watermark_without_ingesting(session, server, store, sink):
    await _connected(session, server, *range(1, 11))

    assert session.state is SessionState.CONNECTED
    assert session.sync_state.initial_sync_completed
    assert session.sync_state.last_processed_uid == 10
    assert store.sync_states[1].last_processed_uid == 10
    assert store.emails == {}
    assert sink.payloads == []


async def test_bootstrap_on_empty_mailbox_starts_at_zero(session, server, store):
    await _connected(session, server)

    assert session.sync_state.last_processed_uid == 0
    assert session.sync_state.initial_sync_completed


async def test_poll_ingests_new_messages_in_uid_order(session, server, store, sink):
    await _connected(session, server, *range(1, 11))
    server.add(11, 12, 13)

    stats = await session.poll_for_new_emails()

    assert server.fetches == [11]
    assert stats.inserted == 3
    assert stats.delivered == 3
    assert [p["subject"] for p in sink.payloads] == ["Message 11", "Message 12", "Message 13"]
    assert session.sync_state.last_processed_uid == 13
    assert store.sync_states[1].last_processed_uid == 13
    assert sorted(uid for _, uid in store.emails) == [11, 12, 13]
    assert session.sync_state.last_synced_at is not None


async def test_refetched_messages_advance_watermark_without_dispatch(session, server, store, sink):
    await _connected(session, server, *range(1, 11))
    server.add(11, 12, 13)
    await session.poll_for_new_emails()

    # Simulate a lost cursor write: the rows exist but the watermark lags
    session.sync_state = session.sync_state.with_fields(last_processed_uid=10)
    stats = await session.poll_for_new_emails()

    assert stats.duplicates == 3
    assert stats.inserted == 0
    assert len(sink.payloads) == 3
    assert session.sync_state.last_processed_uid == 13


async def test_concurrent_polls_run_once(session, server, sink):
    await _connected(session, server, 1)
    server.add(2, 3)
    server.fetch_delay = 0.01

    first, second = await asyncio.gather(session.poll_for_new_emails(), session.poll_for_new_emails())

    assert first.inserted == 2
    assert second is None
    assert server.fetches == [2]
    assert len(sink.payloads) == 2
    assert not session.polling


async def test_concurrent_connects_open_one_connection(session, server):
    server.add(1)
    await session.initialize()
    server.connect_delay = 0.01

    results = await asyncio.gather(session.connect(), session.connect())

    assert sorted(results) == [False, True]
    assert len(server.connections) == 1


async def test_connect_refuses_second_connection(session, server):
    await _connected(session, server, 1)

    assert not await session.connect()
    assert len(server.connections) == 1


async def test_dropped_connection_reconnects_on_next_poll(session, server, sink):
    conn = await _connected(session, server, 1)

    conn.drop(ConnectionResetError("reset by peer"))

    assert session.connection is None
    assert session.state is SessionState.IDLE
    assert session.uptime_seconds() is None

    # First poll after the drop only reconnects
    assert await session.poll_for_new_emails() is None
    assert server.connect_attempts == 2
    assert session.state is SessionState.CONNECTED

    server.add(2)
    stats = await session.poll_for_new_emails()
    assert stats.inserted == 1
    assert len(sink.payloads) == 1


async def test_events_from_a_disconnected_connection_are_ignored(session, server):
    old = await _connected(session, server, 1)
    await session.disconnect()
    assert await session.connect()

    old.drop()

    assert session.connection is server.connections[-1]


async def test_lock_timeout_disconnects_and_keeps_watermark(session, server):
    conn = await _connected(session, server, 1)
    server.add(2)
    server.lock_timeout = True

    assert await session.poll_for_new_emails() is None

    assert session.connection is None
    assert conn.logged_out
    assert session.sync_state.last_processed_uid == 1


async def test_lock_is_released_after_fetch(session, server):
    conn = await _connected(session, server, 1)
    server.add(2)

    await session.poll_for_new_emails()

    assert conn.lock_released == 1


async def test_failed_connect_schedules_reconnect(session, server):
    server.add(1)
    await session.initialize()
    server.fail_connect = True

    assert not await session.connect()
    assert session.state is SessionState.IDLE
    assert server.connections[0].logged_out

    server.fail_connect = False
    await asyncio.sleep(0.05)

    assert server.connect_attempts == 2
    assert session.state is SessionState.CONNECTED


async def test_repeated_connect_failures_keep_retrying(session, server):
    await session.initialize()
    server.fail_connect = True

    await session.connect()
    await asyncio.sleep(0.1)

    assert server.connect_attempts >= 3


async def test_store_error_stops_poll_before_failed_message(session, server, store, sink):
    await _connected(session, server, 10)
    server.add(11, 12, 13)
    store.fail_insert_uids = {12}

    assert await session.poll_for_new_emails() is None

    assert session.sync_state.last_processed_uid == 11
    assert len(sink.payloads) == 1
    assert session.connection is None

    store.fail_insert_uids = set()
    await session.poll_for_new_emails()  # reconnect
    stats = await session.poll_for_new_emails()

    assert stats.inserted == 2
    assert [p["subject"] for p in sink.payloads] == ["Message 11", "Message 12", "Message 13"]
    assert session.sync_state.last_processed_uid == 13


async def test_failed_cursor_write_leaves_memory_cursor(session, server, store, sink):
    await _connected(session, server, 10)
    server.add(11, 12)
    store.fail_update = True

    stats = await session.poll_for_new_emails()

    assert stats.inserted == 2
    assert session.sync_state.last_processed_uid == 10

    store.fail_update = False
    stats = await session.poll_for_new_emails()

    assert stats.duplicates == 2
    assert len(sink.payloads) == 2
    assert session.sync_state.last_processed_uid == 12


async def test_failed_bootstrap_write_disconnects(session, server, store):
    server.add(1, 2)
    await session.initialize()
    store.fail_update = True

    assert not await session.connect()

    assert session.connection is None
    assert server.connections[0].logged_out
    assert not session.sync_state.initial_sync_completed


async def test_initialize_failure_blocks_connect(session, server, store):
    store.fail_sync_state = True

    assert not await session.initialize()
    assert not await session.connect()
    assert server.connections == []


async def test_close_is_terminal(session, server):
    conn = await _connected(session, server, 1)

    await session.close()

    assert conn.logged_out
    assert session.state is SessionState.CLOSED
    assert not await session.connect()
    assert await session.poll_for_new_emails() is None
    assert len(server.connections) == 1


async def test_close_while_connecting_discards_new_connection(session, server):
    await session.initialize()
    server.connect_delay = 0.02

    pending = asyncio.create_task(session.connect())
    await asyncio.sleep(0)
    await session.close()

    assert not await pending
    assert session.connection is None
    assert server.connections[0].logged_out


async def test_close_during_poll_stops_before_next_message(session, server, store):
    await _connected(session, server, 1)
    server.add(2, 3, 4)
    insert = store.insert_email

    async def insert_then_close(stored):
        inserted = await insert(stored)
        await session.close()
        return inserted

    store.insert_email = insert_then_close
    stats = await session.poll_for_new_emails()

    assert stats.inserted == 1
    assert session.sync_state.last_processed_uid == 2


async def test_close_cancels_pending_reconnect(credential, store, dispatcher, server):
    config = SessionConfig(reconnect_delay=10)
    session = MailboxSession(credential, store, dispatcher, server.factory, config)
    await session.initialize()
    server.fail_connect = True
    await session.connect()
    task = session._reconnect_task

    await session.close()
    await asyncio.sleep(0.01)

    assert task.cancelled()
    assert server.connect_attempts == 1


def test_polling_interval_includes_jitter(credential, store, server):
    config = SessionConfig(poll_interval=20, poll_jitter=5)
    intervals = {
        MailboxSession(credential, store, None, server.factory, config, rng=random.Random(seed)).polling_interval
        for seed in range(20)
    }

    assert all(20 <= i <= 25 for i in intervals)
    assert len(intervals) > 1


async def test_is_due_after_interval(session):
    session.last_checked_at = 100.0

    assert not session.is_due(100.0 + session.polling_interval)
    assert session.is_due(100.1 + session.polling_interval)


async def test_snapshot(session, server):
    await _connected(session, server, 5)

    snap = session.snapshot()

    assert snap["id"] == 1
    assert snap["state"] == "connected"
    assert snap["connected"] is True
    assert snap["last_processed_uid"] == 5
    assert snap["uptime_seconds"] == 0


def test_format_uptime():
    assert format_uptime(3725) == "1h 2m 5s"
    assert format_uptime(0) == "0h 0m 0s"


MALFORMED_MESSAGE_ID = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: client@example.com\r\n"
    b"Subject: broken id\r\n"
    b"Message-ID: <[>\r\n"
    b"\r\n"
    b"hello\r\n"
)


async def test_malformed_header_does_not_stall_watermark(session, server, store, sink):
    await _connected(session, server, *range(1, 11))
    server.messages[11] = MALFORMED_MESSAGE_ID
    server.add(12)

    stats = await session.poll_for_new_emails()

    assert stats.inserted == 2
    assert session.sync_state.last_processed_uid == 12
    assert store.sync_states[1].last_processed_uid == 12
    assert store.emails[(1, 11)].message.message_id == "<[>"
    assert [p["subject"] for p in sink.payloads] == ["broken id", "Message 12"]


async def test_unparseable_message_is_stored_and_skipped(session, server, store, sink, monkeypatch):
    from inboxrelay.application.use_cases import ingest_email
    from inboxrelay.infrastructure.email.providers.imap.mapper import parse_email

    def fragile_parse(data: bytes):
        if b"Message 11" in data:
            raise IndexError("pop from empty list")
        return parse_email(data)

    monkeypatch.setattr(ingest_email, "parse_email", fragile_parse)
    await _connected(session, server, *range(1, 11))
    server.add(11, 12)

    stats = await session.poll_for_new_emails()

    assert stats.unparseable == 1
    assert stats.delivered == 1
    assert session.sync_state.last_processed_uid == 12
    assert store.emails[(1, 11)].message.subject is None
    assert [p["subject"] for p in sink.payloads] == ["Message 12"]


async def test_recently_delivered_message_counts_as_skipped(session, server, sink):
    await _connected(session, server, *range(1, 11))
    server.add(11, 12, message_id="<same@example.com>")

    stats = await session.poll_for_new_emails()

    assert stats.inserted == 2
    assert stats.delivered == 1
    assert stats.skipped == 1
    assert len(sink.payloads) == 1


async def test_memory_sync_state_matches_stored_row(session, server, store):
    await _connected(session, server, *range(1, 11))
    server.add(11)

    await session.poll_for_new_emails()

    _, fields = store.updates[-1]
    assert fields["last_processed_uid"] == 11
    assert session.sync_state.last_synced_at == fields["last_synced_at"]
