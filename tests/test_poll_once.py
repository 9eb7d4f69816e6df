import pytest
from conftest import make_credential

from inboxrelay.application.mailbox_session import MailboxSession, SessionConfig
from inboxrelay.application.reconciler import MailboxReconciler
from inboxrelay.application.session_table import SessionTable
from inboxrelay.cli.poll_once import poll_once


@pytest.fixture
def reconciler(store, dispatcher, server):
    config = SessionConfig(poll_jitter=0, reconnect_delay=10)

    def factory(credential):
        return MailboxSession(credential, store, dispatcher, server.factory, config)

    return MailboxReconciler(store, SessionTable(), factory, instance_id="1")


async def test_poll_once_bootstraps_then_ingests(reconciler, store, server, sink):
    store.credentials = [make_credential(1), make_credential(2)]
    server.add(1, 2)

    # First run only records where each mailbox starts
    assert await poll_once(reconciler, reconciler.sessions) == 0
    assert all(s.closed for s in reconciler.sessions)

    server.add(3)
    fresh = MailboxReconciler(store, SessionTable(), reconciler.session_factory, instance_id="1")

    assert await poll_once(fresh, fresh.sessions) == 2
    assert len(sink.payloads) == 2
    assert store.sync_states[1].last_processed_uid == 3
    assert store.sync_states[2].last_processed_uid == 3


async def test_poll_once_fails_when_assignments_unavailable(reconciler, store):
    store.fail_fetch = True

    with pytest.raises(RuntimeError):
        await poll_once(reconciler, reconciler.sessions)
