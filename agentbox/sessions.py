"""Durable storage for the single active demo conversation."""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from agentbox.db import DemoSession, ProcessedEvent, get_session, utcnow
from agentbox.errors import CapExceeded

logger = logging.getLogger("sessions")

ACTIVE = "active"
CAPPED = "capped"
MEETING_PROPOSED = "meeting_proposed"
DECLINED = "declined"


def phase(session: DemoSession) -> str:
    """Collecting before the first reply, capped at the limit, exchanging in between."""
    if session.exchange_count >= session.max_exchanges:
        return "capped"
    if session.exchange_count == 0:
        return "collecting"
    return "exchanging"


class SessionStore:
    """Holds at most one active session plus the processed webhook event ids.

    All mutations go through the database so the exchange counter and the
    dedup record survive restarts. ``increment_exchange`` is a single
    conditional UPDATE; ``mark_processed`` is a single primary-key insert.
    ``lock(session_id)`` gives handlers in this process mutual exclusion
    across the check, generate, send and increment steps of one session.
    """

    def __init__(self, session_factory: Optional[Callable] = None, *, max_exchanges: Optional[int] = None):
        self._session_factory = session_factory or get_session
        self.max_exchanges = (
            max_exchanges if max_exchanges is not None else int(os.getenv("MAX_EXCHANGES", "6"))
        )
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def create_session(
        self,
        seller_inbox_id: str,
        seller_email: str,
        buyer_inbox_id: str,
        buyer_email: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> DemoSession:
        session = DemoSession(
            seller_inbox_id=seller_inbox_id,
            seller_email=seller_email,
            buyer_inbox_id=buyer_inbox_id,
            buyer_email=buyer_email,
            max_exchanges=self.max_exchanges,
            created_at=created_at or utcnow(),
        )
        return await self.replace_session(session)

    async def replace_session(self, new: DemoSession) -> DemoSession:
        """Deactivate every existing session and store ``new`` as the active one."""
        async with self._session_factory() as db:
            await db.exec(
                update(DemoSession)
                .where(DemoSession.active == True)  # noqa: E712
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            new.active = True
            db.add(new)
            await db.commit()
            await db.refresh(new)
        self._locks = {new.id: asyncio.Lock()}
        logger.info(
            "Started session %s (seller=%s, buyer=%s, max_exchanges=%s)",
            new.id,
            new.seller_email,
            new.buyer_email,
            new.max_exchanges,
        )
        return new

    async def get_active_session(self) -> Optional[DemoSession]:
        async with self._session_factory() as db:
            return (
                await db.exec(
                    select(DemoSession)
                    .where(DemoSession.active == True)  # noqa: E712
                    .order_by(DemoSession.created_at.desc())
                    .limit(1)
                )
            ).first()

    async def get_session(self, session_id: str) -> Optional[DemoSession]:
        async with self._session_factory() as db:
            return await db.get(DemoSession, session_id)

    async def increment_exchange(self, session: DemoSession) -> DemoSession:
        """Atomically add one exchange; raise ``CapExceeded`` if the session is already at max."""
        async with self._session_factory() as db:
            result = await db.exec(
                update(DemoSession)
                .where(
                    DemoSession.id == session.id,
                    DemoSession.exchange_count < DemoSession.max_exchanges,
                )
                .values(exchange_count=DemoSession.exchange_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise CapExceeded(session.id, session.max_exchanges)
            await db.exec(
                update(DemoSession)
                .where(
                    DemoSession.id == session.id,
                    DemoSession.exchange_count >= DemoSession.max_exchanges,
                )
                .values(status=CAPPED)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            updated = await db.get(DemoSession, session.id, populate_existing=True)
        return updated

    async def update_status(
        self,
        session_id: str,
        *,
        status: Optional[str] = None,
        last_recommendation: Optional[str] = None,
    ) -> Optional[DemoSession]:
        async with self._session_factory() as db:
            record = await db.get(DemoSession, session_id)
            if not record:
                return None
            if status and record.status == ACTIVE:
                record.status = status
            if last_recommendation:
                record.last_recommendation = last_recommendation
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record

    async def mark_processed(self, event_id: str) -> bool:
        """Claim ``event_id``; False means another delivery already claimed it."""
        async with self._session_factory() as db:
            db.add(ProcessedEvent(event_id=event_id))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True
