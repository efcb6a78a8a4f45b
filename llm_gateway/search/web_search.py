"""Web-Search Gateway: Tavily / Exa with ordered fallback.

Call flow for ``web_search``:
  1. sanitize the query (whitespace collapsed, max 220 chars)
  2. ``model`` provider → empty result, no HTTP (the LLM searches natively)
  3. build the plan: primary + fallbacks, ``model`` removed, de-duplicated
  4. try each vendor strictly in order; a missing key or a failure moves on
  5. first non-empty result wins; an empty result falls through unless it
     came from the last vendor or fallback on empty is disabled

Results are normalized: titles ≤200 chars, snippets and content ≤1200 chars
(``...`` suffix when cut), only http(s) URLs kept, duplicates dropped.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import httpx

from llm_gateway.core.metrics import WEB_SEARCH_CALLS
from llm_gateway.gateway.errors import ErrorCode, classify_status, is_retryable_code

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
EXA_SEARCH_URL = "https://api.exa.ai/search"

DEFAULT_TIMEOUT_SECONDS = 30.0
MIN_TIMEOUT_SECONDS = 3.0
MAX_TIMEOUT_SECONDS = 60.0
MAX_QUERY_LENGTH = 220
DEFAULT_MAX_RESULTS = 5
MAX_PROVIDER_RESULTS = 10
MAX_TITLE_LENGTH = 200
MAX_SNIPPET_LENGTH = 1200
UNTITLED_RESULT = "Untitled result"

_WHITESPACE = re.compile(r"\s+")


class SearchProvider(str, Enum):
    TAVILY = "tavily"
    EXA = "exa"
    MODEL = "model"  # vendor-native search inside the LLM; no HTTP here


_DISPLAY_NAMES = {SearchProvider.TAVILY: "Tavily", SearchProvider.EXA: "Exa"}


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass
class WebSearchResult:
    title: str
    url: str
    snippet: str
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"title": self.title, "url": self.url, "snippet": self.snippet}
        if self.content:
            data["content"] = self.content
        return data


@dataclass
class WebSearchResponse:
    query: str
    results: list[WebSearchResult] = field(default_factory=list)
    provider: str | None = None  # vendor that produced the results

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "provider": self.provider,
            "results": [r.to_dict() for r in self.results],
        }


class WebSearchError(Exception):
    """Raised by the web-search gateway. ``code`` follows the shared taxonomy."""

    def __init__(
        self,
        message: str,
        provider: str,
        code: ErrorCode,
        status: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.code = code
        self.status = status
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "provider": self.provider,
            "code": self.code.value,
            "status": self.status,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"WebSearchError({self.provider!r}, {self.code.value}, status={self.status})"


@dataclass
class WebSearchOptions:
    fallback_providers: list[str] | None = None
    provider_api_keys: Mapping[str, str | None] | None = None
    timeout_seconds: float | None = None
    allow_empty_result_fallback: bool = True


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------


def sanitize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query or "").strip()[:MAX_QUERY_LENGTH]


def trim_text(value: Any, max_length: int = MAX_SNIPPET_LENGTH) -> str:
    if not isinstance(value, str):
        return ""
    normalized = _WHITESPACE.sub(" ", value).strip()
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[:max_length]}..."


def safe_url(value: Any) -> str:
    """Return the URL if it is an absolute http(s) URL, else an empty string."""
    if not isinstance(value, str):
        return ""
    candidate = value.strip()
    try:
        parsed = urlsplit(candidate)
    except ValueError:
        return ""
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return ""
    return candidate


def normalize_results(results: list[WebSearchResult], max_results: int) -> list[WebSearchResult]:
    """Clean, de-duplicate and cap a result list, keeping first occurrences."""
    unique: dict[str, WebSearchResult] = {}
    for item in results:
        title = trim_text(item.title, MAX_TITLE_LENGTH)
        url = safe_url(item.url)
        snippet = trim_text(item.snippet)
        content = trim_text(item.content)

        if not title and not url and not snippet:
            continue

        identity = url or f"{title}|{snippet[:120]}"
        if identity in unique:
            continue

        unique[identity] = WebSearchResult(
            title=title or UNTITLED_RESULT,
            url=url,
            snippet=snippet,
            content=content or None,
        )
        if len(unique) >= max_results:
            break
    return list(unique.values())


def _normalize_api_key(value: str | None) -> str:
    if not value:
        return ""
    trimmed = value.strip()
    # Masked keys echoed back by a settings UI are not usable credentials
    if not trimmed or trimmed.startswith("****"):
        return ""
    return trimmed


def _resolve_timeout(timeout_seconds: float | None) -> float:
    if not timeout_seconds or not math.isfinite(timeout_seconds):
        return DEFAULT_TIMEOUT_SECONDS
    return min(max(timeout_seconds, MIN_TIMEOUT_SECONDS), MAX_TIMEOUT_SECONDS)


def _resolve_max_results(max_results: int | None) -> int:
    if not max_results:
        return DEFAULT_MAX_RESULTS
    return min(max(1, int(max_results)), MAX_PROVIDER_RESULTS)


def _coerce_provider(value: SearchProvider | str) -> SearchProvider | None:
    try:
        return SearchProvider(value.lower() if isinstance(value, str) else value)
    except ValueError:
        return None


def _build_plan(primary: SearchProvider, fallbacks: list[str] | None) -> list[SearchProvider]:
    plan: list[SearchProvider] = []
    for value in [primary, *(fallbacks or [])]:
        provider = _coerce_provider(value)
        if provider is None or provider == SearchProvider.MODEL or provider in plan:
            continue
        plan.append(provider)
    return plan


def _resolve_api_key(
    target: SearchProvider,
    primary: SearchProvider,
    primary_api_key: str | None,
    options: WebSearchOptions,
) -> str:
    overrides = options.provider_api_keys or {}
    option_key = _normalize_api_key(overrides.get(target.value))
    if target == primary:
        return _normalize_api_key(primary_api_key) or option_key
    return option_key


# ---------------------------------------------------------------------------
# Vendor calls
# ---------------------------------------------------------------------------


def _status_error(provider: SearchProvider, status: int, details: str) -> WebSearchError:
    code = classify_status(status)
    detail_text = details[:300] or "Unknown error"
    return WebSearchError(
        f"{_DISPLAY_NAMES[provider]} API error: {status} - {detail_text}",
        provider.value,
        code,
        status,
        retryable=is_retryable_code(code),
    )


async def _post(
    provider: SearchProvider,
    url: str,
    *,
    payload: dict,
    headers: dict[str, str],
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> dict:
    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
            resp = await asyncio.wait_for(client.post(url, json=payload, headers=headers), timeout)
            if not resp.is_success:
                raise _status_error(provider, resp.status_code, resp.text)
            data = resp.json()
    except (asyncio.TimeoutError, httpx.TimeoutException):
        raise WebSearchError("Search request timed out", provider.value, ErrorCode.TIMEOUT, 408, True) from None
    except httpx.TransportError as exc:
        raise WebSearchError(f"Network error: {exc}", provider.value, ErrorCode.NETWORK, 0, True) from exc
    except ValueError as exc:
        raise WebSearchError(
            f"Invalid JSON from {_DISPLAY_NAMES[provider]}", provider.value, ErrorCode.UPSTREAM, 502, True
        ) from exc

    if not isinstance(data, dict):
        raise WebSearchError(
            f"Unexpected response from {_DISPLAY_NAMES[provider]}", provider.value, ErrorCode.UPSTREAM, 502, True
        )
    return data


async def _search_tavily(
    api_key: str,
    query: str,
    max_results: int,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> WebSearchResponse:
    data = await _post(
        SearchProvider.TAVILY,
        TAVILY_SEARCH_URL,
        payload={
            "api_key": api_key,
            "query": query,
            "max_results": max_results,
            "include_answer": False,
            "include_raw_content": False,
        },
        headers={"Content-Type": "application/json"},
        timeout=timeout,
        transport=transport,
    )
    results = [
        WebSearchResult(title=r.get("title") or "", url=r.get("url") or "", snippet=r.get("content") or "")
        for r in data.get("results") or []
        if isinstance(r, dict)
    ]
    return WebSearchResponse(
        query=query,
        results=normalize_results(results, max_results),
        provider=SearchProvider.TAVILY.value,
    )


async def _search_exa(
    api_key: str,
    query: str,
    max_results: int,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> WebSearchResponse:
    data = await _post(
        SearchProvider.EXA,
        EXA_SEARCH_URL,
        payload={
            "query": query,
            "numResults": max_results,
            "type": "neural",
            "useAutoprompt": True,
            "contents": {"text": {"maxCharacters": 1000}},
        },
        headers={"Content-Type": "application/json", "x-api-key": api_key},
        timeout=timeout,
        transport=transport,
    )
    results = [
        WebSearchResult(
            title=r.get("title") or "",
            url=r.get("url") or "",
            snippet=r.get("highlight") or r.get("text") or "",
            content=r.get("text"),
        )
        for r in data.get("results") or []
        if isinstance(r, dict)
    ]
    return WebSearchResponse(
        query=query,
        results=normalize_results(results, max_results),
        provider=SearchProvider.EXA.value,
    )


SearchBackend = Callable[[str, str, int, float, "httpx.AsyncBaseTransport | None"], Awaitable[WebSearchResponse]]

SEARCH_BACKENDS: dict[SearchProvider, SearchBackend] = {
    SearchProvider.TAVILY: _search_tavily,
    SearchProvider.EXA: _search_exa,
}


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


async def web_search(
    provider: SearchProvider | str,
    api_key: str | None,
    query: str,
    max_results: int = DEFAULT_MAX_RESULTS,
    options: WebSearchOptions | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> WebSearchResponse:
    """Search the web through ``provider`` and its fallbacks.

    Raises WebSearchError (``invalid_request`` for an empty query or unknown
    provider, ``missing_key`` when no vendor in the plan had a key, or the
    last vendor failure).
    """
    options = options or WebSearchOptions()
    primary = _coerce_provider(provider)
    normalized_query = sanitize_query(query)

    if primary is None:
        raise WebSearchError(f"Unknown search provider: {provider}", str(provider), ErrorCode.INVALID_REQUEST, 400)
    if not normalized_query:
        raise WebSearchError("Search query must not be empty", primary.value, ErrorCode.INVALID_REQUEST, 400)

    if primary == SearchProvider.MODEL:
        return WebSearchResponse(query=normalized_query, results=[], provider=primary.value)

    limit = _resolve_max_results(max_results)
    timeout = _resolve_timeout(options.timeout_seconds)
    plan = _build_plan(primary, options.fallback_providers)

    last_error: WebSearchError | None = None
    empty_response: WebSearchResponse | None = None

    for index, current in enumerate(plan):
        is_last = index == len(plan) - 1
        key = _resolve_api_key(current, primary, api_key, options)

        if not key:
            WEB_SEARCH_CALLS.labels(provider=current.value, outcome=ErrorCode.MISSING_KEY.value).inc()
            logger.info("Skipping %s web search: no API key", current.value)
            last_error = WebSearchError(
                "Search provider API key is missing", current.value, ErrorCode.MISSING_KEY, 400
            )
            continue

        try:
            response = await SEARCH_BACKENDS[current](key, normalized_query, limit, timeout, transport)
        except WebSearchError as exc:
            WEB_SEARCH_CALLS.labels(provider=current.value, outcome=exc.code.value).inc()
            logger.warning("Web search via %s failed (%s): %s", current.value, exc.code.value, exc.message)
            last_error = exc
            continue

        if response.results:
            WEB_SEARCH_CALLS.labels(provider=current.value, outcome="ok").inc()
            return response

        WEB_SEARCH_CALLS.labels(provider=current.value, outcome="empty").inc()
        if is_last or not options.allow_empty_result_fallback:
            return response
        empty_response = response
        logger.info("%s returned no results for %r, trying next provider", current.value, normalized_query)

    # An empty success from an earlier vendor beats a later failure
    if empty_response is not None:
        return empty_response
    if last_error is not None:
        raise last_error
    return WebSearchResponse(query=normalized_query, results=[])
