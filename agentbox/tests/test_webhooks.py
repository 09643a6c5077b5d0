import asyncio
from datetime import timedelta

import pytest

from agentbox import monitoring
from agentbox.agents import fit_scoring
from agentbox.agents.fit_scoring import ScoringConfig
from agentbox.db import as_utc
from agentbox.errors import ContentGenerationError, TransientGatewayError
from agentbox.sessions import ACTIVE, CAPPED, DECLINED, MEETING_PROPOSED, SessionStore
from agentbox.tests.conftest import BUYER_INBOX, SELLER_INBOX, make_event
from agentbox.webhooks import (
    CAPPED as CAPPED_OUTCOME,
    CLOSED,
    DUPLICATE,
    FAILED,
    IGNORED,
    NO_SESSION,
    REPLIED,
    STALE,
    UNKNOWN_RECIPIENT,
    WebhookProcessor,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def processor(store, gateway, generator, personas, session_factory):
    return WebhookProcessor(store, gateway, generator, personas=personas, session_factory=session_factory)


async def test_buyer_reply_scores_fit_and_advances_counter(processor, store, gateway, generator, active_session):
    result = await processor.handle(make_event(BUYER_INBOX))

    assert result.outcome == REPLIED
    assert result.role == "buyer"
    assert gateway.replies == [{"inbox_id": BUYER_INBOX, "message_id": "msg-1", "text": "Generated reply 1"}]
    prompt, context = generator.calls[0]
    assert "Fit score:" in prompt
    assert "Aria" in context["system_prompt"]

    session = await store.get_session(active_session.id)
    assert session.exchange_count == 1
    assert session.status == ACTIVE
    assert session.last_recommendation == fit_scoring.PROPOSE_MEETING


async def test_seller_reply_after_positive_fit_proposes_meeting(processor, store, generator, active_session):
    await processor.handle(make_event(BUYER_INBOX, event_id="evt-1", message_id="msg-1"))
    result = await processor.handle(make_event(SELLER_INBOX, event_id="evt-2", message_id="msg-2"))

    assert result.outcome == REPLIED
    assert result.role == "seller"
    prompt, context = generator.calls[-1]
    assert "3 specific time slots" in prompt
    assert "Pete" in context["system_prompt"]
    session = await store.get_session(active_session.id)
    assert session.exchange_count == 2
    assert session.status == MEETING_PROPOSED

    closed = await processor.handle(make_event(BUYER_INBOX, event_id="evt-3", message_id="msg-3"))
    assert closed.outcome == CLOSED
    assert (await store.get_session(active_session.id)).exchange_count == 2


async def test_poor_fit_declines_and_closes_conversation(store, gateway, generator, personas, session_factory, active_session):
    processor = WebhookProcessor(
        store,
        gateway,
        generator,
        personas=personas,
        scoring_config=ScoringConfig(meeting_threshold=100, clarify_threshold=100),
        session_factory=session_factory,
    )

    result = await processor.handle(make_event(BUYER_INBOX, text="Hello from Pete."))
    assert result.outcome == REPLIED
    session = await store.get_session(active_session.id)
    assert session.status == DECLINED
    assert session.last_recommendation == fit_scoring.DECLINE

    after = await processor.handle(make_event(SELLER_INBOX, event_id="evt-2", message_id="msg-2"))
    assert after.outcome == CLOSED
    assert len(gateway.replies) == 1


async def test_quoted_history_is_not_fed_to_generator(processor, generator, active_session):
    text = "Happy to chat next week.\n\nOn Mon, Jan 6, 2025 at 10:00 AM Pete wrote:\n> SECRET OLD CONTENT\n"

    await processor.handle(make_event(BUYER_INBOX, text=text))

    prompt, _ = generator.calls[0]
    assert "Happy to chat next week." in prompt
    assert "SECRET OLD CONTENT" not in prompt


async def test_duplicate_delivery_replies_once(processor, store, gateway, active_session):
    payload = make_event(BUYER_INBOX, event_id="evt-dup")

    first = await processor.handle(payload)
    second = await processor.handle(payload)

    assert first.outcome == REPLIED
    assert second.outcome == DUPLICATE
    assert len(gateway.replies) == 1
    assert (await store.get_session(active_session.id)).exchange_count == 1


async def test_concurrent_duplicate_delivery_replies_once(processor, store, gateway, active_session):
    gateway.reply_delay = 0.05
    payload = make_event(BUYER_INBOX, event_id="evt-race")

    results = await asyncio.gather(processor.handle(payload), processor.handle(payload))

    assert sorted(result.outcome for result in results) == [DUPLICATE, REPLIED]
    assert len(gateway.replies) == 1
    assert (await store.get_session(active_session.id)).exchange_count == 1


async def test_message_id_stands_in_for_missing_event_id(processor, gateway, active_session):
    payload = make_event(BUYER_INBOX, message_id="msg-77")
    payload.pop("event_id")

    first = await processor.handle(payload)
    second = await processor.handle(payload)

    assert first.event_id == "message:msg-77"
    assert second.outcome == DUPLICATE
    assert len(gateway.replies) == 1


async def test_session_at_cap_sends_nothing(session_factory, gateway, generator, personas):
    store = SessionStore(session_factory, max_exchanges=2)
    session = await store.create_session(SELLER_INBOX, SELLER_INBOX, BUYER_INBOX, BUYER_INBOX)
    await store.increment_exchange(session)
    await store.increment_exchange(session)
    processor = WebhookProcessor(store, gateway, generator, personas=personas, session_factory=session_factory)

    result = await processor.handle(make_event(BUYER_INBOX, event_id="evt-late"))

    assert result.outcome == CAPPED_OUTCOME
    assert gateway.replies == []
    assert generator.calls == []
    assert (await store.get_session(session.id)).exchange_count == 2


async def test_concurrent_events_at_last_slot_reply_once(session_factory, gateway, generator, personas):
    store = SessionStore(session_factory, max_exchanges=1)
    session = await store.create_session(SELLER_INBOX, SELLER_INBOX, BUYER_INBOX, BUYER_INBOX)
    processor = WebhookProcessor(store, gateway, generator, personas=personas, session_factory=session_factory)
    gateway.reply_delay = 0.05

    results = await asyncio.gather(
        processor.handle(make_event(BUYER_INBOX, event_id="evt-a", message_id="msg-a")),
        processor.handle(make_event(SELLER_INBOX, event_id="evt-b", message_id="msg-b")),
    )

    assert sorted(result.outcome for result in results) == sorted([REPLIED, CAPPED_OUTCOME])
    assert len(gateway.replies) == 1
    updated = await store.get_session(session.id)
    assert updated.exchange_count == 1
    assert updated.status == CAPPED


async def test_pre_session_message_is_stale(processor, store, gateway, active_session):
    old = as_utc(active_session.created_at) - timedelta(hours=1)

    result = await processor.handle(make_event(BUYER_INBOX, created_at=old))

    assert result.outcome == STALE
    assert gateway.replies == []
    assert (await store.get_session(active_session.id)).exchange_count == 0


async def test_unknown_recipient(processor, gateway, active_session):
    result = await processor.handle(make_event("stranger@agentmail.to"))

    assert result.outcome == UNKNOWN_RECIPIENT
    assert gateway.replies == []


async def test_no_active_session(processor, gateway):
    result = await processor.handle(make_event(BUYER_INBOX))

    assert result.outcome == NO_SESSION
    assert gateway.replies == []


async def test_events_for_replaced_session_are_unknown(processor, store, gateway, active_session):
    await store.create_session("seller-new@agentmail.to", "seller-new@agentmail.to", "buyer-new@agentmail.to", "buyer-new@agentmail.to")

    result = await processor.handle(make_event(BUYER_INBOX))

    assert result.outcome == UNKNOWN_RECIPIENT
    assert gateway.replies == []


async def test_gateway_failure_does_not_count_exchange(processor, store, gateway, active_session):
    gateway.reply_error = TransientGatewayError("AgentMail POST reply timed out")

    result = await processor.handle(make_event(BUYER_INBOX, event_id="evt-fail"))

    assert result.outcome == FAILED
    assert "TransientGatewayError" in result.detail
    assert (await store.get_session(active_session.id)).exchange_count == 0

    gateway.reply_error = None
    retry = await processor.handle(make_event(BUYER_INBOX, event_id="evt-fail"))
    assert retry.outcome == DUPLICATE
    assert gateway.replies == []


async def test_generation_failure_does_not_send(processor, store, gateway, generator, active_session):
    generator.error = ContentGenerationError("No content generation backend configured")

    result = await processor.handle(make_event(BUYER_INBOX))

    assert result.outcome == FAILED
    assert gateway.replies == []
    assert (await store.get_session(active_session.id)).exchange_count == 0


async def test_other_event_types_are_ignored(processor, gateway, active_session):
    result = await processor.handle(make_event(BUYER_INBOX, event_type="message.sent"))

    assert result.outcome == IGNORED
    assert gateway.replies == []


async def test_malformed_payload_is_ignored(processor):
    result = await processor.handle({"event_type": "message.received", "message": "not-an-object"})

    assert result.outcome == IGNORED


async def test_outcomes_are_recorded(processor, session_factory, active_session):
    payload = make_event(BUYER_INBOX, event_id="evt-log")
    await processor.handle(payload)
    await processor.handle(payload)

    entries = await monitoring.recent_webhook_events(limit=10, session_factory=session_factory)

    assert [entry["outcome"] for entry in entries] == [DUPLICATE, REPLIED]
    assert entries[1]["session_id"] == active_session.id
    assert entries[1]["role"] == "buyer"
    assert entries[1]["detail"].startswith("Exchange 1/6")


async def test_missing_timestamp_is_admitted(processor, active_session):
    payload = make_event(BUYER_INBOX)
    payload["message"].pop("created_at")

    result = await processor.handle(payload)

    assert result.outcome == REPLIED

