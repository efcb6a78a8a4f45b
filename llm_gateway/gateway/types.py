"""Core types and DTOs for the LLM API Gateway Layer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GatewayVendor(str, Enum):
    """Supported LLM vendors."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    CUSTOM = "custom"  # OpenAI-compatible endpoint at a caller-supplied URL


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ResponseFormat(str, Enum):
    """Response-format hint passed through to vendors that support it."""

    TEXT = "text"
    JSON = "json"


class ChunkType(str, Enum):
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Normalized request: input to an adapter
# ---------------------------------------------------------------------------


@dataclass
class Message:
    role: MessageRole
    content: str
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": MessageRole(self.role).value, "content": self.content}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class ToolDefinition:
    """A function the model may call (JSON-schema parameters)."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    type: str = "function"

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"  # JSON-encoded arguments, as vendors return them
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class NormalizedRequest:
    """Vendor-independent chat request.

    Message order is significant and preserved end-to-end. ``tool_choice`` is
    "auto", "none", "required", or ``{"type": "function", "function": {"name": ...}}``.
    """

    messages: list[Message] = field(default_factory=list)
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[ToolDefinition] | None = None
    tool_choice: str | dict[str, Any] | None = None
    web_search: bool = False
    response_format: ResponseFormat | None = None

    @property
    def system_message(self) -> Message | None:
        return next((m for m in self.messages if m.role == MessageRole.SYSTEM), None)

    @property
    def conversation(self) -> list[Message]:
        """All messages except the system prompt, in original order."""
        return [m for m in self.messages if m.role != MessageRole.SYSTEM]


# ---------------------------------------------------------------------------
# Normalized response: unified DTO (output of every adapter)
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class NormalizedResponse:
    """Unified response from any LLM vendor.

    ``content`` may be an empty string but is never None.
    """

    content: str = ""
    usage: Usage | None = None
    tool_calls: list[ToolCall] | None = None
    finish_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict for the API and SSE stream."""
        return {
            "content": self.content,
            "usage": self.usage.to_dict() if self.usage else None,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls] if self.tool_calls else None,
            "finish_reason": self.finish_reason,
        }


@dataclass
class StreamingChunk:
    """One element of a token stream.

    A stream yields zero or more ``token`` chunks followed by exactly one
    terminal chunk (``done`` or ``error``).
    """

    type: ChunkType
    token: str | None = None
    response: NormalizedResponse | None = None
    error: str | None = None

    @classmethod
    def token_chunk(cls, token: str) -> StreamingChunk:
        return cls(type=ChunkType.TOKEN, token=token)

    @classmethod
    def done_chunk(cls, response: NormalizedResponse) -> StreamingChunk:
        return cls(type=ChunkType.DONE, response=response)

    @classmethod
    def error_chunk(cls, message: str) -> StreamingChunk:
        return cls(type=ChunkType.ERROR, error=message)

    @property
    def is_terminal(self) -> bool:
        return self.type in (ChunkType.DONE, ChunkType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.type == ChunkType.TOKEN:
            data["token"] = self.token
        elif self.type == ChunkType.DONE:
            data["response"] = self.response.to_dict() if self.response else None
        else:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Optional capabilities
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingResponse:
    embeddings: list[list[float]]
    usage: Usage | None = None


@dataclass
class ImageGenOptions:
    size: str = "1024x1024"  # 1024x1024 | 1792x1024 | 1024x1792
    quality: str = "standard"  # standard | hd
    style: str = "vivid"  # vivid | natural


@dataclass
class ImageGenResponse:
    url: str | None = None
    base64: str | None = None
    revised_prompt: str | None = None


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a vendor+model combination supports. Computed, never stored."""

    supports_streaming: bool = False
    supports_tools: bool = False
    supports_model_web_search: bool = False
    supports_vision: bool = False
    supports_embeddings: bool = False
    supports_image_gen: bool = False

    @property
    def supports_function_calling(self) -> bool:
        return self.supports_tools

    def to_dict(self) -> dict[str, bool]:
        return {
            "supports_streaming": self.supports_streaming,
            "supports_tools": self.supports_tools,
            "supports_function_calling": self.supports_function_calling,
            "supports_model_web_search": self.supports_model_web_search,
            "supports_vision": self.supports_vision,
            "supports_embeddings": self.supports_embeddings,
            "supports_image_gen": self.supports_image_gen,
        }


# ---------------------------------------------------------------------------
# Caller / retry config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Per-caller vendor configuration supplied by the persisted-config layer."""

    vendor: GatewayVendor
    base_url: str | None = None
    default_model: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff settings for the retry executor."""

    max_attempts: int = 3  # Total attempts, not retries
    base_retry_delay: float = 1.0  # Base delay for exponential backoff (seconds)
    max_retry_delay: float = 60.0  # Cap on any single delay
    timeout_seconds: float = 120.0  # Per-attempt ceiling


DEFAULT_RETRY_POLICY = RetryPolicy()
DEFAULT_STREAM_RETRY_POLICY = RetryPolicy(timeout_seconds=180.0)


@dataclass
class StreamingOptions:
    """Per-call streaming options.

    ``signal`` is an external cancellation token; setting it aborts the
    transport and terminates the stream with an error chunk.
    """

    signal: asyncio.Event | None = None
    timeout_seconds: float | None = None
