import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agentbox import monitoring
from agentbox.db import as_utc, utcnow
from agentbox.errors import CapExceeded
from agentbox.sessions import ACTIVE, CAPPED, DECLINED, MEETING_PROPOSED, SessionStore, phase

pytestmark = pytest.mark.asyncio


async def test_create_session_becomes_active(store):
    session = await store.create_session("s-inbox", "seller@agentmail.to", "b-inbox", "buyer@agentmail.to")

    active = await store.get_active_session()
    assert active.id == session.id
    assert active.exchange_count == 0
    assert active.max_exchanges == 6
    assert active.status == ACTIVE
    assert phase(active) == "collecting"


async def test_new_session_replaces_previous(store):
    first = await store.create_session("s1", "s1@agentmail.to", "b1", "b1@agentmail.to")
    second = await store.create_session("s2", "s2@agentmail.to", "b2", "b2@agentmail.to")

    active = await store.get_active_session()
    assert active.id == second.id
    previous = await store.get_session(first.id)
    assert previous.active is False


async def test_increment_until_cap(session_factory):
    store = SessionStore(session_factory, max_exchanges=2)
    session = await store.create_session("s", "s@agentmail.to", "b", "b@agentmail.to")

    first = await store.increment_exchange(session)
    assert first.exchange_count == 1
    assert phase(first) == "exchanging"

    second = await store.increment_exchange(session)
    assert second.exchange_count == 2
    assert second.status == CAPPED
    assert phase(second) == "capped"

    with pytest.raises(CapExceeded):
        await store.increment_exchange(session)
    assert (await store.get_session(session.id)).exchange_count == 2


async def test_concurrent_increments_never_pass_cap(session_factory):
    store = SessionStore(session_factory, max_exchanges=3)
    session = await store.create_session("s", "s@agentmail.to", "b", "b@agentmail.to")

    results = await asyncio.gather(
        *(store.increment_exchange(session) for _ in range(5)),
        return_exceptions=True,
    )

    capped = [result for result in results if isinstance(result, CapExceeded)]
    assert len(capped) == 2
    assert (await store.get_session(session.id)).exchange_count == 3


async def test_update_status_keeps_first_terminal_status(store, active_session):
    declined = await store.update_status(active_session.id, status=DECLINED, last_recommendation="decline")
    assert declined.status == DECLINED
    assert declined.last_recommendation == "decline"

    again = await store.update_status(active_session.id, status=MEETING_PROPOSED)
    assert again.status == DECLINED


async def test_update_status_unknown_session(store):
    assert await store.update_status("missing", status=DECLINED) is None


async def test_mark_processed_claims_once(store):
    assert await store.mark_processed("evt-1") is True
    assert await store.mark_processed("evt-1") is False
    assert await store.mark_processed("evt-2") is True


async def test_lock_is_per_session(store, active_session):
    assert store.lock(active_session.id) is store.lock(active_session.id)
    assert store.lock(active_session.id) is not store.lock("other")


async def test_timestamps_are_stored_timezone_aware(store, session_factory):
    started = utcnow()
    assert started.tzinfo is timezone.utc

    session = await store.create_session("s", "s@agentmail.to", "b", "b@agentmail.to", created_at=started)
    assert await store.mark_processed("evt-aware") is True
    logged = await monitoring.record_webhook_event(outcome="ignored", event_id="evt-aware", session_factory=session_factory)

    stored = await store.get_session(session.id)
    assert as_utc(stored.created_at) == started
    assert as_utc(stored.created_at).tzinfo is timezone.utc
    assert logged["timestamp"] is not None


async def test_as_utc_normalizes_naive_and_offset_values():
    aware = datetime(2024, 10, 1, 9, 0, tzinfo=timezone.utc)
    offset = datetime(2024, 10, 1, 11, 0, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(None) is None
    assert as_utc(aware.replace(tzinfo=None)) == aware
    assert as_utc(offset) == aware
    assert as_utc(offset).tzinfo is timezone.utc
