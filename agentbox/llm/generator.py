import asyncio
import logging
import os
from typing import Any, Dict, Optional

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from agentbox import monitoring
from agentbox.errors import ContentGenerationError, TransientGatewayError

MODELS = {
    "openai": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    "local": "mistral",
}


logger = logging.getLogger("llm.generator")


class ContentGenerator:
    """Turns a prompt into an email body using OpenAI, or a local model server.

    Output is non-deterministic and nothing is cached. Every call is bounded by
    ``timeout`` seconds; backend failures surface as exceptions so callers can
    abandon the reply instead of sending placeholder text.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        local_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else float(os.getenv("LLM_TIMEOUT_SECONDS", "45"))
        self.local_url = local_url if local_url is not None else os.getenv("LOCAL_LLM_URL")
        self._openai_client = client or self._init_openai(self.timeout)

    @staticmethod
    def _init_openai(timeout: float) -> Optional[AsyncOpenAI]:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            return None
        try:
            return AsyncOpenAI(api_key=api_key, base_url=os.getenv("OPENAI_BASE_URL") or None, timeout=timeout)
        except OpenAIError as exc:
            monitoring.capture_exception(exc)
            return None

    def backend(self) -> Optional[str]:
        if self._openai_client:
            return "openai"
        if self.local_url:
            return "local"
        return None

    async def generate(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Generate text for ``prompt``.

        ``context`` may carry ``system_prompt`` (persona instructions) and
        ``options`` (passed through to the local model server).

        Raises:
            ContentGenerationError: no backend configured, or empty output.
            TransientGatewayError: timeout, connection failure or 5xx.
        """
        backend = self.backend()
        if backend is None:
            raise ContentGenerationError("No content generation backend configured")

        try:
            if backend == "openai":
                call = self._invoke_openai_model(MODELS["openai"], prompt, context)
            else:
                call = self._invoke_local_model(prompt, context)
            text = await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientGatewayError(f"Content generation timed out after {self.timeout}s") from exc
        except (APITimeoutError, APIConnectionError) as exc:
            raise TransientGatewayError(f"OpenAI request failed: {exc}") from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientGatewayError(f"OpenAI error {exc.status_code}", status_code=exc.status_code) from exc
            raise ContentGenerationError(f"OpenAI rejected the request ({exc.status_code})") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500:
                raise TransientGatewayError(f"Local model error {status}", status_code=status) from exc
            raise ContentGenerationError(f"Local model rejected the request ({status})") from exc
        except httpx.HTTPError as exc:
            raise TransientGatewayError(f"Local model request failed: {exc}") from exc

        if not text:
            raise ContentGenerationError("Content generator returned empty text")
        logger.debug("Generated %s characters with %s", len(text), backend)
        return text

    async def _invoke_openai_model(
        self,
        model: str,
        prompt: str,
        context: Optional[Dict[str, Any]],
    ) -> str:
        system_prompt = context.get("system_prompt") if context else None
        if system_prompt:
            final_prompt = f"{system_prompt.strip()}\n\n{prompt}"
        else:
            final_prompt = prompt

        response = await self._openai_client.responses.create(model=model, input=final_prompt)
        return (response.output_text or "").strip()

    async def _invoke_local_model(self, prompt: str, context: Optional[Dict[str, Any]]) -> str:
        system_prompt = context.get("system_prompt") if context else None
        payload: Dict[str, Any] = {
            "model": MODELS["local"],
            "prompt": prompt,
            "stream": False,
        }
        if system_prompt:
            payload["system"] = system_prompt
        options = context.get("options") if context else None
        if options is not None:
            payload["options"] = options

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.local_url, json=payload)
            response.raise_for_status()
            data = response.json()

        for key in ("output", "response", "text"):
            if key in data:
                return (data[key] or "").strip()
        return ""


generator = ContentGenerator()
