import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from agentbox import monitoring
from agentbox.agents import prompts
from agentbox.agents.registry import BUYER, SELLER, PersonaRegistry, registry as default_registry
from agentbox.db import as_utc, utcnow
from agentbox.errors import GatewayError, GatewayNotConfigured, PartialInitializationFailure
from agentbox.mail_text import message_body
from agentbox.schemas import MessageSummary
from agentbox.sessions import SessionStore

WEBHOOK_PATH = "/webhooks/agentmail"

logger = logging.getLogger("demo")


def _recipients(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value or "")


class DemoInitializer:
    """Creates the seller/buyer inbox pair, wires webhooks and sends the opening email."""

    def __init__(
        self,
        store: SessionStore,
        gateway,
        generator,
        *,
        personas: Optional[PersonaRegistry] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.generator = generator
        self.personas = personas or default_registry

    async def initialize_demo(self, base_url: Optional[str] = None) -> Dict[str, str]:
        """Start a fresh conversation and return the two inbox addresses.

        Args:
            base_url: This deployment's externally reachable URL, used for the
                webhook target when ``PUBLIC_BASE_URL`` is not set.

        Returns:
            dict: ``{"seller": address, "buyer": address}``.

        Raises:
            GatewayNotConfigured: no AgentMail API key is set.
            PartialInitializationFailure: an inbox could not be created or the
                session could not be recorded; created inboxes are deleted.
            GatewayError / ContentGenerationError: the opening email failed.
        """
        seller = self.personas.get(SELLER)
        buyer = self.personas.get(BUYER)
        started_at = utcnow()
        suffix = int(time.time())

        try:
            seller_inbox = await self.gateway.create_inbox(f"{seller.username_prefix}-{suffix}", seller.display_name)
        except GatewayNotConfigured:
            raise
        except GatewayError as exc:
            raise PartialInitializationFailure(f"Seller inbox creation failed: {exc}") from exc
        try:
            buyer_inbox = await self.gateway.create_inbox(f"{buyer.username_prefix}-{suffix}", buyer.display_name)
        except GatewayError as exc:
            await self._discard_inbox(seller_inbox["inbox_id"])
            raise PartialInitializationFailure(f"Buyer inbox creation failed: {exc}") from exc

        try:
            session = await self.store.create_session(
                seller_inbox["inbox_id"],
                seller_inbox["email"],
                buyer_inbox["inbox_id"],
                buyer_inbox["email"],
                created_at=started_at,
            )
        except SQLAlchemyError as exc:
            await self._discard_inbox(seller_inbox["inbox_id"])
            await self._discard_inbox(buyer_inbox["inbox_id"])
            raise PartialInitializationFailure(f"Session could not be recorded: {exc}") from exc

        webhook_url = self._webhook_url(base_url)
        if webhook_url:
            for inbox_id in (session.seller_inbox_id, session.buyer_inbox_id):
                try:
                    await self.gateway.register_webhook(inbox_id, webhook_url)
                except GatewayError as exc:
                    logger.warning(
                        "Webhook registration failed for %s; replies need manual polling: %s",
                        inbox_id,
                        exc,
                    )
        else:
            logger.warning("No public base URL known; skipping webhook registration")

        opening = await self.generator.generate(
            prompts.opening_prompt(seller.opening_prompt, session.buyer_email),
            {"system_prompt": seller.instructions},
        )
        await self.gateway.send_message(
            session.seller_inbox_id,
            session.buyer_email,
            seller.opening_subject,
            opening,
        )
        logger.info("Opening email sent from %s to %s", session.seller_email, session.buyer_email)
        return {"seller": session.seller_email, "buyer": session.buyer_email}

    async def _discard_inbox(self, inbox_id: str) -> None:
        try:
            await self.gateway.delete_inbox(inbox_id)
        except GatewayError as exc:
            monitoring.capture_exception(exc)
            logger.error("Could not delete orphaned inbox %s: %s", inbox_id, exc)

    @staticmethod
    def _webhook_url(base_url: Optional[str]) -> Optional[str]:
        base = os.getenv("PUBLIC_BASE_URL") or base_url
        if not base:
            return None
        return f"{base.rstrip('/')}{WEBHOOK_PATH}"

    async def list_conversation(self) -> Dict[str, Any]:
        """Collect every message received by either inbox since the session started."""
        session = await self.store.get_active_session()
        if session is None:
            return {"initialized": False, "messages": [], "seller": None, "buyer": None}

        started_at = as_utc(session.created_at)
        summaries = []
        for inbox_id in (session.seller_inbox_id, session.buyer_inbox_id):
            for raw in await self.gateway.list_messages(inbox_id):
                try:
                    summary = MessageSummary.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Skipping unreadable message summary in %s: %s", inbox_id, exc)
                    continue
                if "sent" in (summary.labels or []):
                    continue
                if summary.sent_at is not None and summary.sent_at < started_at:
                    continue
                summaries.append((inbox_id, summary))

        full = await asyncio.gather(
            *(self.gateway.get_message(inbox_id, summary.message_id) for inbox_id, summary in summaries)
        )
        messages: List[Dict[str, Any]] = []
        for (inbox_id, summary), detail in zip(summaries, full):
            detail = detail or {}
            messages.append(
                {
                    "message_id": summary.message_id,
                    "inbox_id": inbox_id,
                    "from": detail.get("from") or summary.from_ or "",
                    "to": _recipients(detail.get("to") or summary.to),
                    "subject": detail.get("subject") or summary.subject or "",
                    "text": message_body(detail.get("text"), detail.get("html")) or summary.preview or "",
                    "created_at": summary.sent_at.isoformat() if summary.sent_at else None,
                }
            )
        messages.sort(key=lambda item: item["created_at"] or "")
        return {
            "initialized": True,
            "messages": messages,
            "seller": session.seller_email,
            "buyer": session.buyer_email,
        }
