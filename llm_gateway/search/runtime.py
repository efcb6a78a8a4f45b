"""Web-search runtime helpers used by callers that mix search into generation.

  - provider / keyword normalization
  - query expansion by category
  - API key resolution (env → shared key → caller key)
  - fallback vendor map (tavily ↔ exa)
  - user-facing error messages
  - formatting results as LLM context
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from llm_gateway.core.config import Settings, settings as default_settings
from llm_gateway.gateway.errors import ErrorCode
from llm_gateway.gateway.types import ToolDefinition
from llm_gateway.search.web_search import (
    SearchProvider,
    WebSearchError,
    WebSearchResult,
    normalize_results,
    trim_text,
)

logger = logging.getLogger(__name__)

DEFAULT_KEYWORD_LENGTH = 200
DEFAULT_MAX_QUERIES = 3
MAX_CONTEXT_RESULTS = 8
CONTEXT_SNIPPET_LENGTH = 300

SEARCH_PROVIDER_FALLBACKS: dict[str, list[str]] = {
    SearchProvider.TAVILY.value: [SearchProvider.EXA.value],
    SearchProvider.EXA.value: [SearchProvider.TAVILY.value],
    SearchProvider.MODEL.value: [],
}

# Function tool offered to models without vendor-native search
WEB_SEARCH_TOOL = ToolDefinition(
    name="web_search",
    description=(
        "Search the internet for up-to-date information. Use it for domain knowledge, "
        "current events, prices, markets, historical events, real people and places, "
        "or statistics."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "A short, specific search query"},
        },
        "required": ["query"],
    },
)

_ERROR_MESSAGES = {
    ErrorCode.TIMEOUT: "The search service timed out",
    ErrorCode.AUTH: "The search API key is invalid or lacks permission",
    ErrorCode.QUOTA: "Search quota exhausted or too many requests",
    ErrorCode.MISSING_KEY: "No search API key is configured",
    ErrorCode.NETWORK: "Network error, the search service is unreachable",
}


def normalize_search_provider(value: Any, fallback: str = SearchProvider.MODEL.value) -> str:
    if isinstance(value, str) and value in SEARCH_PROVIDER_FALLBACKS:
        return value
    return fallback


def normalize_search_keyword(keyword: Any, max_length: int = DEFAULT_KEYWORD_LENGTH) -> str:
    if not isinstance(keyword, str):
        return ""
    return keyword.strip()[: max(1, max_length)]


def build_search_queries(
    keyword: Any,
    categories: Iterable[Any] | None = None,
    max_queries: int = DEFAULT_MAX_QUERIES,
) -> list[str]:
    """Expand a keyword into ``keyword`` plus ``keyword category`` queries."""
    base = normalize_search_keyword(keyword)
    if not base:
        return []

    limit = max(1, max_queries)
    queries = [base]
    for raw in categories or []:
        if len(queries) >= limit:
            break
        if not isinstance(raw, str) or not raw.strip():
            continue
        query = f"{base} {raw.strip()}"
        if query not in queries:
            queries.append(query)
    return queries[:limit]


def build_provider_api_keys(
    provider: str,
    user_api_key: str | None = None,
    config: Settings | None = None,
) -> dict[str, str]:
    """Per-vendor keys: environment first, then the shared key, then the caller's key."""
    config = config or default_settings
    keys = {
        SearchProvider.TAVILY.value: config.tavily_api_key or "",
        SearchProvider.EXA.value: config.exa_api_key or "",
    }
    if provider not in keys:
        return keys

    if not keys[provider] and config.web_search_api_key:
        keys[provider] = config.web_search_api_key
    if isinstance(user_api_key, str) and user_api_key.strip():
        keys[provider] = user_api_key.strip()
    return keys


def has_any_search_api_key(provider_api_keys: Mapping[str, str | None] | None) -> bool:
    if not provider_api_keys:
        return False
    return bool(provider_api_keys.get(SearchProvider.TAVILY.value) or provider_api_keys.get(SearchProvider.EXA.value))


def get_search_fallback_providers(provider: str) -> list[str]:
    return list(SEARCH_PROVIDER_FALLBACKS.get(provider, []))


def format_web_search_error(error: BaseException) -> str:
    """Short user-facing description of a search failure."""
    if isinstance(error, WebSearchError):
        return _ERROR_MESSAGES.get(error.code, f"Search service error ({error.provider})")
    return "Search service error"


def dedupe_web_search_results(results: Any) -> list[Any]:
    """Drop repeated results (by URL, else title plus snippet prefix), keeping order."""
    unique: dict[str, Any] = {}
    for item in results if isinstance(results, list) else []:
        if isinstance(item, WebSearchResult):
            title, snippet, url = item.title, item.snippet, item.url
        elif isinstance(item, Mapping):
            title = item.get("title") if isinstance(item.get("title"), str) else ""
            snippet = item.get("snippet") if isinstance(item.get("snippet"), str) else ""
            url = item.get("url") if isinstance(item.get("url"), str) else ""
        else:
            continue

        key = url or f"{title}|{snippet[:80]}"
        if key not in unique:
            unique[key] = item
    return list(unique.values())


def format_search_results_for_context(results: list[WebSearchResult]) -> str:
    """Render results as numbered source blocks for an LLM prompt."""
    if not results:
        return ""

    blocks = []
    for index, item in enumerate(normalize_results(results, MAX_CONTEXT_RESULTS), start=1):
        source = f"Source: {item.url}" if item.url else "Source: unknown"
        blocks.append(f"[{index}] {item.title}\n{source}\n{trim_text(item.snippet, CONTEXT_SNIPPET_LENGTH)}")
    return "\n\n".join(blocks)
