import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from agentbox import monitoring
from agentbox.agents import fit_scoring, prompts
from agentbox.agents.registry import BUYER, SELLER, PersonaRegistry, registry as default_registry
from agentbox.db import DemoSession, as_utc
from agentbox.errors import CapExceeded, ContentGenerationError, GatewayError
from agentbox.mail_text import message_body, strip_quoted_history
from agentbox.schemas import InboundMessage, WebhookEnvelope
from agentbox.sessions import ACTIVE, DECLINED, MEETING_PROPOSED, SessionStore

MESSAGE_RECEIVED = "message.received"

REPLIED = "replied"
DUPLICATE = "duplicate"
STALE = "stale"
UNKNOWN_RECIPIENT = "unknown_recipient"
CAPPED = "capped"
CLOSED = "closed"
NO_SESSION = "no_session"
IGNORED = "ignored"
FAILED = "failed"

_LEVELS = {
    REPLIED: logging.INFO,
    DUPLICATE: logging.INFO,
    STALE: logging.INFO,
    CAPPED: logging.INFO,
    CLOSED: logging.INFO,
    IGNORED: logging.INFO,
    UNKNOWN_RECIPIENT: logging.WARNING,
    NO_SESSION: logging.WARNING,
    FAILED: logging.ERROR,
}


@dataclass
class ProcessingResult:
    outcome: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    inbox_id: Optional[str] = None
    role: Optional[str] = None
    detail: Optional[str] = None
    reply_message_id: Optional[str] = None


class WebhookProcessor:
    """Turns inbound ``message.received`` deliveries into persona replies.

    Each delivery is claimed by event id before any other work, checked
    against the active session (staleness, recipient role, cap, status), and
    answered through the provider's reply endpoint. The session's exchange
    counter only advances after a reply was actually sent. Failures are
    logged and recorded; they are never retried here.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway,
        generator,
        *,
        personas: Optional[PersonaRegistry] = None,
        scoring_config: Optional[fit_scoring.ScoringConfig] = None,
        session_factory=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.generator = generator
        self.personas = personas or default_registry
        self.scoring_config = scoring_config
        self.session_factory = session_factory
        self.logger = logger or logging.getLogger("webhooks")

    async def handle(self, payload: Dict[str, Any]) -> ProcessingResult:
        """Process one webhook delivery. Never raises."""
        started = time.perf_counter()
        try:
            result = await self._process(payload)
        except Exception as exc:
            monitoring.capture_exception(exc)
            result = ProcessingResult(outcome=FAILED, detail=f"Unhandled error: {exc}")
        duration_ms = (time.perf_counter() - started) * 1000
        self._log(result)
        try:
            await monitoring.record_webhook_event(
                outcome=result.outcome,
                event_id=result.event_id,
                event_type=result.event_type,
                session_id=result.session_id,
                inbox_id=result.inbox_id,
                role=result.role,
                detail=result.detail,
                duration_ms=duration_ms,
                session_factory=self.session_factory,
            )
        except Exception as exc:
            monitoring.capture_exception(exc)
        return result

    async def _process(self, payload: Dict[str, Any]) -> ProcessingResult:
        try:
            envelope = WebhookEnvelope.model_validate(payload or {})
        except ValidationError as exc:
            return ProcessingResult(outcome=IGNORED, detail=f"Malformed payload ({exc.error_count()} errors)")

        event_type = envelope.event_type or envelope.type
        message = envelope.message
        if event_type != MESSAGE_RECEIVED or message is None:
            return ProcessingResult(
                outcome=IGNORED,
                event_id=envelope.event_id,
                event_type=event_type,
                detail="Not a message.received event",
            )

        event_id = envelope.event_id or f"message:{message.message_id}"
        result = ProcessingResult(
            outcome=IGNORED,
            event_id=event_id,
            event_type=event_type,
            inbox_id=message.inbox_id,
        )

        if not await self.store.mark_processed(event_id):
            result.outcome = DUPLICATE
            return result

        session = await self.store.get_active_session()
        if session is None:
            result.outcome = NO_SESSION
            result.detail = "No active demo session"
            return result
        result.session_id = session.id

        sent_at = message.sent_at
        if sent_at is not None and sent_at < as_utc(session.created_at):
            result.outcome = STALE
            result.detail = f"Message from {sent_at.isoformat()} predates session start {session.created_at.isoformat()}"
            return result

        role = self._role_for(session, message.inbox_id)
        if role is None:
            result.outcome = UNKNOWN_RECIPIENT
            result.detail = f"Inbox {message.inbox_id} is not part of session {session.id}"
            return result
        result.role = role

        async with self.store.lock(session.id):
            current = await self.store.get_session(session.id)
            if current is None or not current.active:
                result.outcome = NO_SESSION
                result.detail = "Session was replaced while the event was queued"
                return result
            if current.exchange_count >= current.max_exchanges:
                result.outcome = CAPPED
                result.detail = f"Exchange cap {current.max_exchanges} reached"
                return result
            if current.status != ACTIVE:
                result.outcome = CLOSED
                result.detail = f"Conversation ended ({current.status})"
                return result
            return await self._reply(current, role, message, result)

    @staticmethod
    def _role_for(session: DemoSession, inbox_id: str) -> Optional[str]:
        if inbox_id == session.seller_inbox_id:
            return SELLER
        if inbox_id == session.buyer_inbox_id:
            return BUYER
        return None

    async def _reply(
        self,
        session: DemoSession,
        role: str,
        message: InboundMessage,
        result: ProcessingResult,
    ) -> ProcessingResult:
        body = strip_quoted_history(message_body(message.text, message.html))
        persona = self.personas.get(role)

        fit: Optional[fit_scoring.FitScore] = None
        propose_times = False
        if role == BUYER:
            fit = fit_scoring.score(
                self.personas.seller_criteria(),
                self.personas.buyer_profile(),
                body,
                self.scoring_config,
            )
        elif session.last_recommendation == fit_scoring.PROPOSE_MEETING:
            propose_times = True

        prompt = prompts.reply_prompt(
            role,
            message.from_,
            message.subject,
            body,
            fit=fit,
            propose_times=propose_times,
        )

        try:
            text = await self.generator.generate(prompt, {"system_prompt": persona.instructions})
            sent = await self.gateway.reply_to_message(message.inbox_id, message.message_id, text)
        except (GatewayError, ContentGenerationError) as exc:
            self.logger.error(
                "Reply to %s failed (subject=%r): %s",
                message.from_,
                message.subject,
                exc,
                extra={"webhook": {"event_id": result.event_id, "role": role, "session_id": session.id}},
            )
            monitoring.capture_exception(exc)
            result.outcome = FAILED
            result.detail = f"{type(exc).__name__}: {exc}"
            return result

        result.reply_message_id = (sent or {}).get("message_id")
        try:
            updated = await self.store.increment_exchange(session)
        except CapExceeded as exc:
            result.outcome = CAPPED
            result.detail = f"Reply sent but {exc}"
            return result

        status = None
        if fit is not None and fit.recommendation == fit_scoring.DECLINE:
            status = DECLINED
        elif propose_times:
            status = MEETING_PROPOSED
        if status or fit is not None:
            updated = await self.store.update_status(
                session.id,
                status=status,
                last_recommendation=fit.recommendation if fit else None,
            ) or updated

        result.outcome = REPLIED
        result.detail = f"Exchange {updated.exchange_count}/{updated.max_exchanges}"
        if fit is not None:
            result.detail += f", fit {fit.overall_score} ({fit.recommendation})"
        if updated.status != ACTIVE:
            result.detail += f", conversation {updated.status}"
        return result

    def _log(self, result: ProcessingResult) -> None:
        payload = {
            "event_id": result.event_id,
            "session_id": result.session_id,
            "role": result.role,
            "outcome": result.outcome,
        }
        self.logger.log(
            _LEVELS.get(result.outcome, logging.INFO),
            "webhook %s %s: %s",
            result.event_id,
            result.outcome,
            result.detail or "",
            extra={"webhook": payload},
        )
