"""Vendor-Specific Adapters: protocol-level handling for each LLM vendor.

Each adapter translates a NormalizedRequest into the vendor's HTTP protocol,
sends it through the retry executor, and returns a NormalizedResponse.
The same adapter also serves the streaming variant of the call.

Vendor-specific behaviors:
  - OpenAI: chat completions; web search reroutes to the Responses API;
    embeddings and DALL-E image generation
  - Custom: any OpenAI-compatible endpoint at a caller-supplied URL, chat only
  - Claude: Messages API, system prompt out of band, max_tokens mandatory
  - Gemini: generateContent, functionDeclarations, google_search grounding,
    finish_reason SAFETY / promptFeedback.blockReason → non-retryable 400
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx

from llm_gateway.gateway.base_url import get_provider_base_url
from llm_gateway.gateway.capabilities import get_provider_capabilities
from llm_gateway.gateway.errors import ProviderError
from llm_gateway.gateway.normalizer import normalize_response
from llm_gateway.gateway.retry import fetch_with_retry
from llm_gateway.gateway.streaming import (
    StreamParser,
    parse_claude_stream,
    parse_gemini_stream,
    parse_openai_stream,
    stream_completion,
)
from llm_gateway.gateway.types import (
    DEFAULT_RETRY_POLICY,
    DEFAULT_STREAM_RETRY_POLICY,
    ChunkType,
    EmbeddingResponse,
    GatewayVendor,
    ImageGenOptions,
    ImageGenResponse,
    MessageRole,
    NormalizedRequest,
    NormalizedResponse,
    ProviderCapabilities,
    ProviderConfig,
    ResponseFormat,
    RetryPolicy,
    StreamingChunk,
    StreamingOptions,
    ToolCall,
    Usage,
)

logger = logging.getLogger(__name__)


def resolve_model(
    request_model: str | None,
    user_default: str | None = None,
    provider_default: str | None = None,
) -> str:
    """Pick the model: request → caller default → vendor default."""
    for candidate in (request_model, user_default, provider_default):
        if candidate and candidate.strip():
            return candidate.strip()
    raise ValueError("No model specified and no default configured")


def _usage(data: Any, prompt_key: str, completion_key: str, total_key: str | None = None) -> Usage | None:
    if not isinstance(data, dict):
        return None
    prompt = int(data.get(prompt_key) or 0)
    completion = int(data.get(completion_key) or 0)
    total = int(data.get(total_key) or 0) if total_key else 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total or prompt + completion)


def _error_message(data: dict) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)[:200]
    return str(error)


class BaseVendorAdapter(ABC):
    """Base class for all vendor adapters.

    Class-level capability flags are what the adapter implementation can do;
    model-specific limits come from the capability registry.
    """

    vendor: GatewayVendor
    display_name: str = ""
    default_model: str = ""

    supports_streaming: bool = True
    supports_tools: bool = False
    supports_vision: bool = False
    supports_embeddings: bool = False
    supports_image_gen: bool = False

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        stream_retry_policy: RetryPolicy | None = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or get_provider_base_url(self.vendor)).rstrip("/")
        self.transport = transport
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.stream_retry_policy = stream_retry_policy or DEFAULT_STREAM_RETRY_POLICY

    @property
    def capability_flags(self) -> dict[str, bool]:
        return {
            "supports_streaming": self.supports_streaming,
            "supports_tools": self.supports_tools,
            "supports_vision": self.supports_vision,
            "supports_embeddings": self.supports_embeddings,
            "supports_image_gen": self.supports_image_gen,
        }

    def capabilities(self, model: str = "") -> ProviderCapabilities:
        return get_provider_capabilities(self.vendor, model, self.capability_flags)

    def resolve_model(self, config: ProviderConfig | None, request: NormalizedRequest) -> str:
        return resolve_model(request.model, config.default_model if config else None, self.default_model)

    @abstractmethod
    async def generate(self, config: ProviderConfig | None, request: NormalizedRequest) -> NormalizedResponse:
        """Send a buffered request and return a normalized response."""
        ...

    @abstractmethod
    def generate_stream(
        self,
        config: ProviderConfig | None,
        request: NormalizedRequest,
        options: StreamingOptions | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        """Stream tokens; ends with exactly one done or error chunk."""
        ...

    async def create_embedding(self, texts: list[str], model: str | None = None) -> EmbeddingResponse:
        raise NotImplementedError(f"{self.vendor.value} does not support embeddings")

    async def generate_image(self, prompt: str, options: ImageGenOptions | None = None) -> ImageGenResponse:
        raise NotImplementedError(f"{self.vendor.value} does not support image generation")

    # -- transport helpers --------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(self, url: str, payload: dict, params: dict[str, str] | None = None) -> dict:
        resp = await fetch_with_retry(
            url,
            headers=self._headers(),
            json=payload,
            params=params,
            policy=self.retry_policy,
            transport=self.transport,
            vendor=self.vendor.value,
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from {self.display_name}", 502, retryable=True) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected response shape from {self.display_name}", 502, retryable=True)
        return data

    async def _stream(
        self,
        url: str,
        payload: dict,
        parser: StreamParser,
        options: StreamingOptions | None,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        chunks = stream_completion(
            url,
            headers=self._headers(),
            json=payload,
            parser=parser,
            params=params,
            options=options,
            policy=self.stream_retry_policy,
            transport=self.transport,
            vendor=self.vendor.value,
        )
        try:
            async for chunk in chunks:
                if chunk.type == ChunkType.DONE and chunk.response is not None:
                    normalize_response(self.vendor, chunk.response)
                yield chunk
        finally:
            await chunks.aclose()


# ---------------------------------------------------------------------------
# OpenAI Adapter (and OpenAI-compatible custom endpoints)
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseVendorAdapter):
    """OpenAI Chat Completions adapter."""

    vendor = GatewayVendor.OPENAI
    display_name = "OpenAI"
    default_model = "gpt-4o-mini"

    supports_tools = True
    supports_vision = True
    supports_embeddings = True
    supports_image_gen = True

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _chat_payload(self, model: str, request: NormalizedRequest, stream: bool = False) -> dict:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.tools:
            payload["tools"] = [t.to_openai() for t in request.tools]
            payload["tool_choice"] = request.tool_choice or "auto"
        if request.response_format == ResponseFormat.JSON:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def generate(self, config: ProviderConfig | None, request: NormalizedRequest) -> NormalizedResponse:
        model = self.resolve_model(config, request)
        if request.web_search:
            return await self._generate_with_web_search(model, request)

        data = await self._post_json(f"{self.base_url}/chat/completions", self._chat_payload(model, request))

        choices = data.get("choices") or []
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        if not message:
            if data.get("error"):
                raise ProviderError(f"{self.display_name} error: {_error_message(data)}", 400, retryable=False)
            raise ProviderError(f"Empty response from {self.display_name}", 500, retryable=True)

        tool_calls = [
            ToolCall(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "{}",
                type=tc.get("type", "function"),
            )
            for tc in message.get("tool_calls") or []
        ]

        response = NormalizedResponse(
            content=message.get("content") or "",
            usage=_usage(data.get("usage"), "prompt_tokens", "completion_tokens", "total_tokens"),
            tool_calls=tool_calls or None,
            finish_reason=choices[0].get("finish_reason"),
        )
        return normalize_response(self.vendor, response)

    async def _generate_with_web_search(self, model: str, request: NormalizedRequest) -> NormalizedResponse:
        """Vendor-native web search through the Responses API."""
        last_user = next((m for m in reversed(request.messages) if m.role == MessageRole.USER), None)
        payload: dict[str, Any] = {
            "model": model,
            "input": last_user.content if last_user else "",
            "tools": [{"type": "web_search"}],
            "tool_choice": "auto",
        }
        system = request.system_message
        if system:
            payload["instructions"] = system.content
        if request.max_tokens is not None:
            payload["max_output_tokens"] = request.max_tokens

        data = await self._post_json(f"{self.base_url}/responses", payload)
        if data.get("error"):
            raise ProviderError(f"{self.display_name} error: {_error_message(data)}", 400, retryable=False)

        content = ""
        for item in data.get("output") or []:
            if isinstance(item, dict) and item.get("type") == "message":
                texts = [
                    block.get("text") or ""
                    for block in item.get("content") or []
                    if isinstance(block, dict) and block.get("type") == "output_text"
                ]
                content = texts[0] if texts else ""
                break

        status = data.get("status")
        if not content and status != "completed":
            raise ProviderError(f"Empty response from {self.display_name} Responses API", 500, retryable=True)

        response = NormalizedResponse(
            content=content,
            usage=_usage(data.get("usage"), "input_tokens", "output_tokens", "total_tokens"),
            finish_reason="stop" if status == "completed" else status,
        )
        return normalize_response(self.vendor, response)

    def generate_stream(
        self,
        config: ProviderConfig | None,
        request: NormalizedRequest,
        options: StreamingOptions | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        model = self.resolve_model(config, request)
        payload = self._chat_payload(model, request, stream=True)
        return self._stream(f"{self.base_url}/chat/completions", payload, parse_openai_stream, options)

    async def create_embedding(
        self, texts: list[str], model: str | None = "text-embedding-3-small"
    ) -> EmbeddingResponse:
        data = await self._post_json(
            f"{self.base_url}/embeddings",
            {"model": model or "text-embedding-3-small", "input": texts},
        )
        items = data.get("data")
        if not items or not all(isinstance(item, dict) and item.get("embedding") for item in items):
            raise ProviderError("Invalid embedding response", 500, retryable=True)
        items = sorted(items, key=lambda item: item.get("index", 0))
        return EmbeddingResponse(
            embeddings=[item["embedding"] for item in items],
            usage=_usage(data.get("usage"), "prompt_tokens", "completion_tokens", "total_tokens"),
        )

    async def generate_image(self, prompt: str, options: ImageGenOptions | None = None) -> ImageGenResponse:
        options = options or ImageGenOptions()
        data = await self._post_json(
            f"{self.base_url}/images/generations",
            {
                "model": "dall-e-3",
                "prompt": prompt,
                "n": 1,
                "size": options.size,
                "quality": options.quality,
                "style": options.style,
            },
        )
        images = data.get("data") or []
        if not images:
            raise ProviderError(f"Empty image response from {self.display_name}", 500, retryable=True)
        image = images[0]
        return ImageGenResponse(
            url=image.get("url"),
            base64=image.get("b64_json"),
            revised_prompt=image.get("revised_prompt"),
        )


class CustomAdapter(OpenAIAdapter):
    """OpenAI-compatible endpoint at a caller-supplied base URL. Chat only."""

    vendor = GatewayVendor.CUSTOM
    display_name = "Custom provider"
    default_model = ""

    supports_vision = False
    supports_embeddings = False
    supports_image_gen = False

    create_embedding = BaseVendorAdapter.create_embedding
    generate_image = BaseVendorAdapter.generate_image


# ---------------------------------------------------------------------------
# Claude Adapter (Anthropic Messages API)
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"
_CLAUDE_DEFAULT_MAX_TOKENS = 4096


class ClaudeAdapter(BaseVendorAdapter):
    """Anthropic Messages API adapter."""

    vendor = GatewayVendor.CLAUDE
    display_name = "Claude"
    default_model = "claude-3-5-sonnet-latest"

    supports_vision = True

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _payload(self, model: str, request: NormalizedRequest, stream: bool = False) -> dict:
        # Claude has no tool role in this mapping; tool output is replayed as user text
        messages = [
            {"role": "assistant" if m.role == MessageRole.ASSISTANT else "user", "content": m.content}
            for m in request.conversation
        ]
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens or _CLAUDE_DEFAULT_MAX_TOKENS,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        system = request.system_message
        if system:
            payload["system"] = system.content
        if stream:
            payload["stream"] = True
        return payload

    async def generate(self, config: ProviderConfig | None, request: NormalizedRequest) -> NormalizedResponse:
        model = self.resolve_model(config, request)
        data = await self._post_json(f"{self.base_url}/v1/messages", self._payload(model, request))

        if data.get("error") or data.get("type") == "error":
            raise ProviderError(f"Claude error: {_error_message(data)}", 400, retryable=False)

        stop_reason = data.get("stop_reason")
        if stop_reason == "refusal":
            raise ProviderError("Claude response blocked by safety filters", 400, retryable=False)

        text = "".join(
            block.get("text") or ""
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        if not text and stop_reason != "max_tokens":
            raise ProviderError("Empty response from Claude", 500, retryable=True)

        response = NormalizedResponse(
            content=text,
            usage=_usage(data.get("usage"), "input_tokens", "output_tokens"),
            finish_reason=stop_reason,
        )
        return normalize_response(self.vendor, response)

    def generate_stream(
        self,
        config: ProviderConfig | None,
        request: NormalizedRequest,
        options: StreamingOptions | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        model = self.resolve_model(config, request)
        payload = self._payload(model, request, stream=True)
        return self._stream(f"{self.base_url}/v1/messages", payload, parse_claude_stream, options)


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------

_GEMINI_MAJOR_VERSION = re.compile(r"gemini-(\d+)")

_FUNCTION_CALLING_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


def _uses_google_search_tool(model: str) -> bool:
    """Gemini 2.x+ grounds with ``google_search``; older models use retrieval."""
    match = _GEMINI_MAJOR_VERSION.search(model or "")
    return bool(match) and int(match.group(1)) >= 2


def _function_calling_config(tool_choice: str | dict | None) -> dict | None:
    if tool_choice is None:
        return None
    if isinstance(tool_choice, dict):
        name = (tool_choice.get("function") or {}).get("name")
        if name:
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [name]}}
        return None
    mode = _FUNCTION_CALLING_MODES.get(str(tool_choice).lower())
    return {"functionCallingConfig": {"mode": mode}} if mode else None


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    vendor = GatewayVendor.GEMINI
    display_name = "Gemini"
    default_model = "gemini-2.0-flash"

    supports_tools = True
    supports_vision = True
    supports_embeddings = True

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _model_url(self, model: str, method: str) -> str:
        return f"{self.base_url}/v1beta/models/{model}:{method}"

    def _contents(self, request: NormalizedRequest) -> list[dict]:
        contents = []
        for m in request.conversation:
            if m.role == MessageRole.TOOL:
                part = {
                    "functionResponse": {
                        "name": m.tool_call_id or "function",
                        "response": {"result": m.content},
                    }
                }
                contents.append({"role": "user", "parts": [part]})
            else:
                role = "model" if m.role == MessageRole.ASSISTANT else "user"
                contents.append({"role": role, "parts": [{"text": m.content}]})
        return contents

    def _payload(self, model: str, request: NormalizedRequest) -> dict:
        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.response_format == ResponseFormat.JSON:
            generation_config["responseMimeType"] = "application/json"

        payload: dict[str, Any] = {"contents": self._contents(request)}
        if generation_config:
            payload["generationConfig"] = generation_config

        # System instruction (separate from contents in Gemini API)
        system = request.system_message
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system.content}]}

        tools: list[dict] = []
        if request.tools:
            tools.append(
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in request.tools
                    ]
                }
            )
            tool_config = _function_calling_config(request.tool_choice)
            if tool_config:
                payload["toolConfig"] = tool_config
        if request.web_search:
            tools.append({"google_search": {}} if _uses_google_search_tool(model) else {"googleSearchRetrieval": {}})
        if tools:
            payload["tools"] = tools
        return payload

    async def generate(self, config: ProviderConfig | None, request: NormalizedRequest) -> NormalizedResponse:
        model = self.resolve_model(config, request)
        data = await self._post_json(self._model_url(model, "generateContent"), self._payload(model, request))

        if data.get("error"):
            raise ProviderError(f"Gemini error: {_error_message(data)}", 400, retryable=False)

        candidates = data.get("candidates") or []
        if not candidates:
            # No candidates: check prompt feedback
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(f"Gemini prompt blocked: {block_reason}", 400, retryable=False)
            raise ProviderError("Empty response from Gemini", 500, retryable=True)

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason == "SAFETY":
            raise ProviderError("Gemini response blocked by safety filters", 400, retryable=False)

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
        tool_calls = [
            ToolCall(
                id=f"call_{index}",
                name=p["functionCall"].get("name", ""),
                arguments=json.dumps(p["functionCall"].get("args") or {}),
            )
            for index, p in enumerate(parts)
            if isinstance(p, dict) and isinstance(p.get("functionCall"), dict)
        ]
        if not text and not tool_calls:
            raise ProviderError("Empty response from Gemini", 500, retryable=True)

        response = NormalizedResponse(
            content=text,
            usage=_usage(data.get("usageMetadata"), "promptTokenCount", "candidatesTokenCount", "totalTokenCount"),
            tool_calls=tool_calls or None,
            finish_reason="tool_calls" if tool_calls else finish_reason,
        )
        return normalize_response(self.vendor, response)

    def generate_stream(
        self,
        config: ProviderConfig | None,
        request: NormalizedRequest,
        options: StreamingOptions | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        model = self.resolve_model(config, request)
        return self._stream(
            self._model_url(model, "streamGenerateContent"),
            self._payload(model, request),
            parse_gemini_stream,
            options,
            params={"alt": "sse"},
        )

    async def create_embedding(self, texts: list[str], model: str | None = "text-embedding-004") -> EmbeddingResponse:
        model = model or "text-embedding-004"
        embeddings: list[list[float]] = []
        total_tokens = 0
        # One call per text, sequentially
        for text in texts:
            data = await self._post_json(
                self._model_url(model, "embedContent"),
                {"model": f"models/{model}", "content": {"parts": [{"text": text}]}},
            )
            values = (data.get("embedding") or {}).get("values")
            if not values:
                raise ProviderError("Invalid embedding response", 500, retryable=True)
            embeddings.append(values)
            total_tokens += int((data.get("usageMetadata") or {}).get("totalTokenCount") or 0)

        usage = Usage(prompt_tokens=total_tokens, total_tokens=total_tokens) if total_tokens else None
        return EmbeddingResponse(embeddings=embeddings, usage=usage)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[GatewayVendor, type[BaseVendorAdapter]] = {
    GatewayVendor.OPENAI: OpenAIAdapter,
    GatewayVendor.CUSTOM: CustomAdapter,
    GatewayVendor.CLAUDE: ClaudeAdapter,
    GatewayVendor.GEMINI: GeminiAdapter,
}


def create_adapter(
    vendor: GatewayVendor | str,
    api_key: str,
    custom_base_url: str | None = None,
    **kwargs,
) -> BaseVendorAdapter:
    """Factory: resolve the base URL and build the adapter for a vendor.

    Raises ValueError for unknown vendors and BaseURLError for rejected URLs.
    """
    try:
        key = GatewayVendor(vendor.lower() if isinstance(vendor, str) else vendor)
    except ValueError:
        raise ValueError(f"No adapter registered for vendor: {vendor}") from None

    cls = ADAPTER_REGISTRY[key]
    base_url = get_provider_base_url(key, custom_base_url)
    return cls(api_key=api_key, base_url=base_url, **kwargs)
