"""Company research through the Perplexity chat completions API."""

import os
import re
from typing import Any, Dict, List, Optional

import httpx

from agentbox.errors import GatewayError, GatewayNotConfigured, TransientGatewayError

API_URL = "https://api.perplexity.ai/chat/completions"
MODEL = os.getenv("PERPLEXITY_MODEL", "sonar")

SYSTEM_PROMPT = (
    "You are a business research assistant. Provide factual, concise information about companies. "
    "Format your response as structured data."
)

FIELD_KEYWORDS = {
    "industry": ("industry", "sector"),
    "company_size": ("employees", "company size", "team size"),
    "funding": ("funding", "raised", "valuation"),
    "headquarters": ("headquarters", "location", "based in"),
}
TECH_KEYWORDS = ("stack", "technology", "technologies", "tools", "using")


def is_configured() -> bool:
    return bool(os.getenv("PERPLEXITY_API_KEY"))


def _after_keyword(text: str, keyword: str) -> Optional[str]:
    match = re.search(rf"{re.escape(keyword)}[:\s]+(.*?)(?:[.\n]|$)", text, re.IGNORECASE)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def extract_field(text: str, keywords) -> Optional[str]:
    for keyword in keywords:
        value = _after_keyword(text, keyword)
        if value:
            return value
    return None


def extract_tech_stack(text: str) -> Optional[List[str]]:
    for keyword in TECH_KEYWORDS:
        value = _after_keyword(text, keyword)
        if value:
            items = [item.strip() for item in re.split(r"[,;]", value)]
            return [item for item in items if item]
    return None


def parse_research(content: str) -> Dict[str, Any]:
    """Pull the labelled facts out of a free-text research answer; unknown fields are None."""
    parsed: Dict[str, Any] = {name: extract_field(content, keywords) for name, keywords in FIELD_KEYWORDS.items()}
    parsed["tech_stack"] = extract_tech_stack(content)
    parsed["description"] = content[:200]
    return parsed


async def research_company(
    company_name: str,
    company_domain: Optional[str] = None,
    *,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    api_key = os.getenv("PERPLEXITY_API_KEY")
    if not api_key:
        raise GatewayNotConfigured("PERPLEXITY_API_KEY not configured")

    subject = f"{company_name} ({company_domain})" if company_domain else company_name
    query = (
        f"Research {subject}: What is their industry, approximate company size (number of employees), "
        "tech stack, funding status, and headquarters location?"
    )
    payload = {
        "model": MODEL,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": query},
        ],
        "temperature": 0.2,
    }

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )
    except httpx.HTTPError as exc:
        raise TransientGatewayError(f"Perplexity request failed: {exc}") from exc

    if response.status_code >= 500:
        raise TransientGatewayError(f"Perplexity API error: {response.text}", status_code=response.status_code)
    if response.status_code >= 400:
        raise GatewayError(f"Perplexity API error: {response.text}", status_code=response.status_code)

    data = response.json()
    choices = data.get("choices") or [{}]
    content = ((choices[0] or {}).get("message") or {}).get("content") or ""
    return parse_research(content)
