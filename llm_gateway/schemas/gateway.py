"""Pydantic request/response models for the generation and provider endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from llm_gateway.gateway.types import (
    GatewayVendor,
    Message,
    MessageRole,
    NormalizedRequest,
    ResponseFormat,
    ToolDefinition,
)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class MessageIn(BaseModel):
    role: MessageRole
    content: str
    tool_call_id: str | None = None


class ToolIn(BaseModel):
    """Function tool the model may call (JSON-schema parameters)."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class GenerateRequest(BaseModel):
    vendor: GatewayVendor
    messages: list[MessageIn] = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    tools: list[ToolIn] | None = None
    tool_choice: Literal["auto", "none", "required"] | dict[str, Any] | None = None
    web_search: bool = False
    response_format: ResponseFormat | None = None

    # Per-request credentials; fall back to server-side settings when omitted
    api_key: str | None = None
    base_url: str | None = None
    default_model: str | None = None

    def to_normalized(self) -> NormalizedRequest:
        return NormalizedRequest(
            messages=[Message(role=m.role, content=m.content, tool_call_id=m.tool_call_id) for m in self.messages],
            model=self.model or "",
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            tools=[ToolDefinition(name=t.name, description=t.description, parameters=t.parameters) for t in self.tools]
            if self.tools
            else None,
            tool_choice=self.tool_choice,
            web_search=self.web_search,
            response_format=self.response_format,
        )


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


class UsageOut(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ToolCallFunction(BaseModel):
    name: str
    arguments: str


class ToolCallOut(BaseModel):
    id: str
    type: str = "function"
    function: ToolCallFunction


class GenerateResponse(BaseModel):
    vendor: GatewayVendor
    model: str
    content: str
    usage: UsageOut | None = None
    tool_calls: list[ToolCallOut] | None = None
    finish_reason: str | None = None
    cited_urls: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CapabilitiesResponse(BaseModel):
    vendor: str
    model: str | None = None
    supports_streaming: bool
    supports_tools: bool
    supports_function_calling: bool
    supports_model_web_search: bool
    supports_vision: bool
    supports_embeddings: bool
    supports_image_gen: bool


class ProviderInfo(BaseModel):
    vendor: GatewayVendor
    default_base_url: str | None = None
    configured: bool = False
