import logging
import os
from typing import Any, Callable, Dict, List, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sqlmodel import select

from agentbox.analytics import realtime
from agentbox.db import WebhookLog, get_session

_logger = logging.getLogger("agentbox")
_initialized = False


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_logging = LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
        sentry_sdk.init(
            dsn=dsn,
            integrations=[sentry_logging],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


def _serialize(entry: WebhookLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "session_id": entry.session_id,
        "inbox_id": entry.inbox_id,
        "role": entry.role,
        "outcome": entry.outcome,
        "detail": entry.detail,
        "duration_ms": round(entry.duration_ms, 2),
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


async def record_webhook_event(
    *,
    outcome: str,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    session_id: Optional[str] = None,
    inbox_id: Optional[str] = None,
    role: Optional[str] = None,
    detail: Optional[str] = None,
    duration_ms: float = 0.0,
    session_factory: Optional[Callable] = None,
) -> Dict[str, Any]:
    entry = WebhookLog(
        event_id=event_id,
        event_type=event_type,
        session_id=session_id,
        inbox_id=inbox_id,
        role=role,
        outcome=outcome,
        detail=detail[:1024] if detail else None,
        duration_ms=duration_ms,
    )
    async with (session_factory or get_session)() as session:
        session.add(entry)
        await session.commit()
        await session.refresh(entry)
    payload = _serialize(entry)
    await realtime.feed.publish(payload)
    return payload


async def recent_webhook_events(limit: int = 50, session_factory: Optional[Callable] = None) -> List[Dict[str, Any]]:
    async with (session_factory or get_session)() as session:
        rows = (
            await session.exec(
                select(WebhookLog).order_by(WebhookLog.id.desc()).limit(limit)
            )
        ).all()
    return [_serialize(row) for row in rows]


def capture_exception(exc: BaseException) -> None:
    _logger.error("Exception captured", exc_info=exc)
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc)

