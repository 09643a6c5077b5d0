import asyncio
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from agentbox.errors import GatewayError, GatewayNotConfigured, TransientGatewayError

DEFAULT_BASE_URL = "https://api.agentmail.to/v0"
WEBHOOK_EVENT_TYPES = ["message.received"]

logger = logging.getLogger("integrations.agentmail")


def _segment(value: str) -> str:
    return quote(value, safe="@")


def _already_exists(exc: GatewayError) -> bool:
    text = str(exc).lower()
    return exc.status_code == 409 or "already exists" in text or "alreadyexists" in text


class AgentMailClient:
    """Thin async wrapper over the AgentMail REST API.

    Every call is a single HTTP request bounded by ``timeout`` seconds. Network
    failures, timeouts and 5xx responses raise ``TransientGatewayError``; other
    error statuses raise ``GatewayError`` with the status code attached.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        domain: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("AGENTMAIL_API_KEY")
        self.base_url = (base_url or os.getenv("AGENTMAIL_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.domain = domain or os.getenv("AGENTMAIL_DOMAIN", "agentmail.to")
        self.timeout = timeout if timeout is not None else float(os.getenv("AGENTMAIL_TIMEOUT_SECONDS", "20"))
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.api_key:
            raise GatewayNotConfigured("AGENTMAIL_API_KEY not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await asyncio.wait_for(
                    client.request(method, path, json=json, params=params),
                    timeout=self.timeout,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise TransientGatewayError(f"AgentMail {method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransientGatewayError(f"AgentMail {method} {path} failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransientGatewayError(
                f"AgentMail {method} {path} failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"AgentMail {method} {path} failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def create_inbox(self, username: str, display_name: str) -> Dict[str, str]:
        data = await self._request(
            "POST",
            "/inboxes",
            json={"username": username, "domain": self.domain, "display_name": display_name},
        )
        inbox_id = data.get("inbox_id") or data.get("inboxId")
        if not inbox_id:
            raise GatewayError(f"AgentMail create inbox returned no inbox id: {data}")
        logger.info("Created inbox %s", inbox_id)
        return {"inbox_id": inbox_id, "email": data.get("email") or inbox_id}

    async def delete_inbox(self, inbox_id: str) -> None:
        await self._request("DELETE", f"/inboxes/{_segment(inbox_id)}")
        logger.info("Deleted inbox %s", inbox_id)

    async def send_message(self, inbox_id: str, to: str, subject: str, text: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/inboxes/{_segment(inbox_id)}/messages/send",
            json={"to": [to], "subject": subject, "text": text},
        )

    async def reply_to_message(self, inbox_id: str, message_id: str, text: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/inboxes/{_segment(inbox_id)}/messages/{_segment(message_id)}/reply",
            json={"text": text},
        )

    async def list_messages(self, inbox_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"limit": limit} if limit else None
        data = await self._request("GET", f"/inboxes/{_segment(inbox_id)}/messages", params=params)
        messages = data.get("messages") or []
        logger.debug("listMessages returned %s messages for inbox %s", len(messages), inbox_id)
        return messages

    async def get_message(self, inbox_id: str, message_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/inboxes/{_segment(inbox_id)}/messages/{_segment(message_id)}")

    async def register_webhook(self, inbox_id: Optional[str], url: str) -> Dict[str, Any]:
        """Register ``url`` for ``message.received`` events; an existing registration counts as success."""
        payload: Dict[str, Any] = {"url": url, "event_types": WEBHOOK_EVENT_TYPES}
        if inbox_id:
            payload["inbox_ids"] = [inbox_id]
        try:
            result = await self._request("POST", "/webhooks", json=payload)
        except GatewayError as exc:
            if isinstance(exc, TransientGatewayError) or not _already_exists(exc):
                raise
            logger.info("Webhook %s already registered for inbox %s", url, inbox_id)
            return {"url": url, "inbox_ids": payload.get("inbox_ids", []), "already_registered": True}
        logger.info("Registered webhook %s for inbox %s", url, inbox_id)
        return result

    async def list_webhooks(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/webhooks")
        return data.get("webhooks") or []
