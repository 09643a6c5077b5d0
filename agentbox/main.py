"""FastAPI application: webhook intake, demo session control and fit scoring."""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from agentbox import monitoring
from agentbox.agents import fit_scoring
from agentbox.agents.registry import registry as persona_registry
from agentbox.analytics import realtime
from agentbox.db import init_db
from agentbox.demo import DemoInitializer
from agentbox.errors import ContentGenerationError, GatewayError, GatewayNotConfigured, PartialInitializationFailure
from agentbox.integrations import perplexity
from agentbox.integrations.agentmail import AgentMailClient
from agentbox.llm.generator import generator
from agentbox.schemas import (
    ConversationOut,
    DemoInitializeOut,
    FitScoreIn,
    ResearchIn,
    SessionOut,
)
from agentbox.sessions import SessionStore, phase
from agentbox.webhooks import WebhookProcessor

API_PORT = int(os.getenv("API_PORT", "8000"))

monitoring.init_monitoring()

logger = logging.getLogger("api")

store = SessionStore()
gateway = AgentMailClient()
scoring_config = fit_scoring.load_scoring_config()
processor = WebhookProcessor(store, gateway, generator, personas=persona_registry, scoring_config=scoring_config)
initializer = DemoInitializer(store, gateway, generator, personas=persona_registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    persona_registry.load()
    if not gateway.is_configured():
        logger.warning("AGENTMAIL_API_KEY not configured - email functionality will be limited")
    yield


app = FastAPI(title="AgentBox API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.post("/webhooks/agentmail")
async def agentmail_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge an AgentMail delivery and process it after the response is sent.

    Args:
        request: Raw webhook request; a body that is not JSON is still acknowledged.
        background_tasks: Runs the processor once the 200 has been returned.

    Returns:
        dict: Minimal acknowledgement.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    background_tasks.add_task(processor.handle, body)
    return {"received": True}


@app.post("/api/demo/initialize", response_model=DemoInitializeOut)
async def initialize_demo(request: Request):
    """Create a fresh seller/buyer inbox pair and send the opening email.

    Args:
        request: Used to derive the webhook base URL when PUBLIC_BASE_URL is unset.

    Returns:
        DemoInitializeOut: The seller and buyer addresses.
    """
    try:
        result = await initializer.initialize_demo(base_url=str(request.base_url))
    except GatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except PartialInitializationFailure as exc:
        monitoring.capture_exception(exc)
        raise HTTPException(status_code=502, detail=f"Failed to initialize demo: {exc}") from exc
    except (GatewayError, ContentGenerationError) as exc:
        monitoring.capture_exception(exc)
        raise HTTPException(status_code=502, detail=f"Failed to start conversation: {exc}") from exc
    except KeyError as exc:
        raise HTTPException(status_code=500, detail=f"Persona configuration missing: {exc}") from exc
    return result


@app.get("/api/demo/messages", response_model=ConversationOut)
async def demo_messages():
    """Return the live conversation for the active session."""
    try:
        return await initializer.list_conversation()
    except GatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to fetch messages: {exc}") from exc


@app.get("/api/demo/webhooks")
async def demo_webhooks(limit: int = 50):
    """Return recent webhook-processing records, newest first."""
    return await monitoring.recent_webhook_events(limit=max(1, min(limit, 500)))


@app.get("/api/demo/session", response_model=SessionOut)
async def demo_session():
    session = await store.get_active_session()
    if not session:
        raise HTTPException(status_code=404, detail="No active demo session")
    return SessionOut(
        id=session.id,
        seller=session.seller_email,
        buyer=session.buyer_email,
        exchange_count=session.exchange_count,
        max_exchanges=session.max_exchanges,
        phase=phase(session),
        status=session.status,
        last_recommendation=session.last_recommendation,
        created_at=session.created_at,
    )


@app.post("/api/fit-score")
async def fit_score(payload: FitScoreIn) -> Dict[str, Any]:
    """Score a seller/buyer pair against email text.

    Args:
        payload: Optional explicit criteria and profile; the configured
            seller and buyer personas fill in whatever is omitted.

    Returns:
        dict: Overall score, signal breakdown, recommendation and missing info.
    """
    try:
        if payload.seller_criteria:
            criteria = fit_scoring.SellerCriteria(**payload.seller_criteria.model_dump())
        else:
            criteria = persona_registry.seller_criteria()
        if payload.buyer_profile:
            profile = fit_scoring.BuyerProfile(**payload.buyer_profile.model_dump())
        else:
            profile = persona_registry.buyer_profile()
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except KeyError as exc:
        raise HTTPException(status_code=500, detail=f"Persona configuration missing: {exc}") from exc
    return fit_scoring.score(criteria, profile, payload.email_text, scoring_config).as_dict()


@app.get("/api/agents/{role}")
async def agent_config(role: str):
    config = persona_registry.get_config(role)
    if not config:
        raise HTTPException(status_code=404, detail="Agent not found")
    return config


@app.post("/api/research")
async def research(payload: ResearchIn):
    """Look up company facts used to fill in a buyer or seller profile."""
    try:
        return await perplexity.research_company(payload.company_name, payload.company_domain)
    except GatewayNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.websocket("/ws/demo")
async def demo_ws(websocket: WebSocket):
    """Stream webhook-processing outcomes to the demo dashboard."""
    await websocket.accept()
    queue = await realtime.feed.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        realtime.feed.unsubscribe(queue)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
