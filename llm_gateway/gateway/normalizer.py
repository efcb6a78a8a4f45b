"""Response Normalizer: post-processes adapter output.

Applies final normalization steps after a vendor adapter returns:
  - Guarantees content is a string, never None
  - Fills total_tokens when the vendor only reported the parts
  - Maps vendor finish reasons onto the OpenAI vocabulary
    (stop / length / tool_calls / content_filter)
  - Extracts cited URLs from response text
"""

from __future__ import annotations

import logging
import re

from llm_gateway.gateway.types import GatewayVendor, NormalizedResponse

logger = logging.getLogger(__name__)

# URL pattern for extracting citations from response text
_URL_PATTERN = re.compile(r"https?://[^\s\)\]\}\"'<>,]+")

_FINISH_REASONS: dict[str, str] = {
    # Claude
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
    # Gemini
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}


def normalize_finish_reason(reason: str | None) -> str | None:
    if not reason:
        return None
    return _FINISH_REASONS.get(reason, reason.lower())


def normalize_response(vendor: GatewayVendor | str, response: NormalizedResponse) -> NormalizedResponse:
    """Apply normalization to an adapter response.

    This is idempotent: can be called multiple times safely.
    """
    if response.content is None:
        response.content = ""

    usage = response.usage
    if usage is not None and usage.total_tokens == 0 and (usage.prompt_tokens or usage.completion_tokens):
        usage.total_tokens = usage.prompt_tokens + usage.completion_tokens

    if response.tool_calls is not None and not response.tool_calls:
        response.tool_calls = None

    normalized = normalize_finish_reason(response.finish_reason)
    if normalized != response.finish_reason:
        logger.debug("Normalized %s finish reason %s -> %s", vendor, response.finish_reason, normalized)
        response.finish_reason = normalized

    return response


def extract_cited_urls(text: str) -> list[str]:
    """Extract unique URLs from response text, in order of appearance."""
    if not text:
        return []
    seen: set[str] = set()
    result: list[str] = []
    for url in _URL_PATTERN.findall(text):
        cleaned = url.rstrip(".,;:!?)")
        if cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result
