"""Pydantic request/response models for the web-search endpoint."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    provider: str | None = None  # tavily | exa | model; server default when omitted
    api_key: str | None = None
    max_results: int = Field(default=5, ge=1, le=10)
    fallback_providers: list[str] | None = None  # None → tavily ↔ exa
    allow_empty_result_fallback: bool = True
    include_context: bool = False


class SearchResultOut(BaseModel):
    title: str
    url: str
    snippet: str
    content: str | None = None


class SearchResponse(BaseModel):
    query: str
    provider: str | None = None
    results: list[SearchResultOut] = Field(default_factory=list)
    context: str | None = None
