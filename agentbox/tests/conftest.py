import asyncio
import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./agentbox-test.db")
os.environ.setdefault("SENTRY_DSN", "")

from agentbox.agents.registry import DEFAULT_CONFIG_DIR, PersonaRegistry  # noqa: E402
from agentbox.db import init_db, make_engine, make_session_factory, session_scope  # noqa: E402
from agentbox.errors import GatewayError  # noqa: E402
from agentbox.sessions import SessionStore  # noqa: E402

SELLER_INBOX = "seller-1700000000@agentmail.to"
BUYER_INBOX = "buyer-1700000000@agentmail.to"


class FakeGateway:
    """In-memory AgentMail stand-in that records every call."""

    def __init__(self):
        self.created = []
        self.deleted = []
        self.sent = []
        self.replies = []
        self.webhooks = []
        self.create_failures = {}
        self.reply_error = None
        self.webhook_error = None
        self.send_error = None
        self.reply_delay = 0.0
        self.messages = {}
        self.details = {}

    def is_configured(self):
        return True

    async def create_inbox(self, username, display_name):
        for prefix, exc in self.create_failures.items():
            if username.startswith(prefix):
                raise exc
        inbox_id = f"{username}@agentmail.to"
        self.created.append({"inbox_id": inbox_id, "display_name": display_name})
        return {"inbox_id": inbox_id, "email": inbox_id}

    async def delete_inbox(self, inbox_id):
        self.deleted.append(inbox_id)

    async def send_message(self, inbox_id, to, subject, text):
        if self.send_error:
            raise self.send_error
        self.sent.append({"inbox_id": inbox_id, "to": to, "subject": subject, "text": text})
        return {"message_id": f"sent-{len(self.sent)}"}

    async def reply_to_message(self, inbox_id, message_id, text):
        if self.reply_delay:
            await asyncio.sleep(self.reply_delay)
        if self.reply_error:
            raise self.reply_error
        self.replies.append({"inbox_id": inbox_id, "message_id": message_id, "text": text})
        return {"message_id": f"reply-{len(self.replies)}"}

    async def register_webhook(self, inbox_id, url):
        if self.webhook_error:
            raise self.webhook_error
        self.webhooks.append({"inbox_id": inbox_id, "url": url})
        return {"url": url}

    async def list_messages(self, inbox_id, limit=None):
        return list(self.messages.get(inbox_id, []))

    async def get_message(self, inbox_id, message_id):
        return self.details.get(message_id, {})


class FakeGenerator:
    def __init__(self):
        self.calls = []
        self.error = None

    async def generate(self, prompt, context=None):
        if self.error:
            raise self.error
        self.calls.append((prompt, context or {}))
        return f"Generated reply {len(self.calls)}"


def make_event(
    inbox_id,
    *,
    event_id="evt-1",
    message_id="msg-1",
    text="We are looking for a better way to qualify leads.",
    created_at=None,
    sender="someone@agentmail.to",
    event_type="message.received",
):
    sent_at = created_at or datetime.now(timezone.utc)
    return {
        "type": "event",
        "event_type": event_type,
        "event_id": event_id,
        "message": {
            "inbox_id": inbox_id,
            "message_id": message_id,
            "thread_id": "thread-1",
            "from": sender,
            "to": [inbox_id],
            "subject": "Re: Cutting lead qualification time for your sales team",
            "text": text,
            "created_at": sent_at.isoformat(),
        },
    }


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'agentbox.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_scope(make_session_factory(engine))


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory, max_exchanges=6)


@pytest.fixture
def personas():
    registry = PersonaRegistry(DEFAULT_CONFIG_DIR)
    registry.load()
    return registry


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest_asyncio.fixture
async def active_session(store):
    return await store.create_session(SELLER_INBOX, SELLER_INBOX, BUYER_INBOX, BUYER_INBOX)


@pytest.fixture
def gateway_error():
    return GatewayError("Inbox quota exceeded", status_code=403)
