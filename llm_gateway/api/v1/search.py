"""Web search endpoint: Tavily / Exa with fallback."""

import httpx
from fastapi import APIRouter, Depends

from llm_gateway.core.config import settings
from llm_gateway.core.dependencies import get_http_transport
from llm_gateway.schemas.search import SearchRequest, SearchResponse
from llm_gateway.search.runtime import (
    build_provider_api_keys,
    format_search_results_for_context,
    get_search_fallback_providers,
    normalize_search_provider,
)
from llm_gateway.search.web_search import WebSearchOptions, web_search

router = APIRouter(prefix="/search", tags=["search"])


@router.post("", response_model=SearchResponse)
async def search(
    body: SearchRequest,
    transport: httpx.AsyncBaseTransport | None = Depends(get_http_transport),
):
    provider = normalize_search_provider(
        body.provider,
        normalize_search_provider(settings.web_search_default_provider),
    )
    provider_api_keys = build_provider_api_keys(provider, body.api_key)
    fallbacks = body.fallback_providers
    if fallbacks is None:
        fallbacks = get_search_fallback_providers(provider)

    result = await web_search(
        provider,
        provider_api_keys.get(provider),
        body.query,
        body.max_results,
        WebSearchOptions(
            fallback_providers=fallbacks,
            provider_api_keys=provider_api_keys,
            timeout_seconds=settings.web_search_timeout_seconds,
            allow_empty_result_fallback=body.allow_empty_result_fallback,
        ),
        transport=transport,
    )

    data = result.to_dict()
    if body.include_context:
        data["context"] = format_search_results_for_context(result.results)
    return SearchResponse(**data)
