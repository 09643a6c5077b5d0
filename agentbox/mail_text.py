"""Plain-text helpers for inbound email bodies."""

import re
from typing import Optional

from bs4 import BeautifulSoup

# A line that starts the quoted or forwarded part of a reply.
REPLY_SEPARATORS = (
    re.compile(r"^\s*On\b.*\bwrote:\s*$", re.IGNORECASE),
    re.compile(r"^\s*-{2,}\s*Original Message\s*-{2,}\s*$", re.IGNORECASE),
    re.compile(r"^\s*-{2,}\s*Forwarded message\s*-{2,}\s*$", re.IGNORECASE),
    re.compile(r"^\s*Begin forwarded message:\s*$", re.IGNORECASE),
    re.compile(r"^\s*_{10,}\s*$"),
)
# Gmail wraps long attributions: "On Tue, Oct 1, 2024 at 9:14 AM Pete <pete@x>" / "wrote:"
WRAPPED_ATTRIBUTION = re.compile(r"^\s*On\b.*\d.*$", re.IGNORECASE)
WRAPPED_ATTRIBUTION_END = re.compile(r"^.*\bwrote:\s*$", re.IGNORECASE)
QUOTE_MARKER = re.compile(r"^\s*>")

BLOCK_TAGS = ["p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote"]


def _separator_index(lines: list) -> Optional[int]:
    for index, line in enumerate(lines):
        if any(pattern.match(line) for pattern in REPLY_SEPARATORS):
            return index
        if (
            WRAPPED_ATTRIBUTION.match(line)
            and index + 1 < len(lines)
            and WRAPPED_ATTRIBUTION_END.match(lines[index + 1])
        ):
            return index
    return None


def strip_quoted_history(body: Optional[str]) -> str:
    """Return only the new content of a reply.

    Truncates at the first reply/forward separator line, drops any remaining
    lines that start with ``>``, then trims surrounding whitespace. This is a
    text heuristic; it does not parse MIME structure.
    """
    if not body:
        return ""
    lines = body.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    cut = _separator_index(lines)
    if cut is not None:
        lines = lines[:cut]
    kept = [line for line in lines if not QUOTE_MARKER.match(line)]
    return "\n".join(kept).strip()


def html_to_text(markup: Optional[str]) -> str:
    if not markup:
        return ""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_after("\n")
    text = soup.get_text()
    lines = [line.rstrip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def message_body(text: Optional[str], markup: Optional[str]) -> str:
    """Prefer the text part; fall back to the HTML part rendered as text."""
    if text and text.strip():
        return text
    return html_to_text(markup)
