"""LLM API Gateway: facade integrating the gateway components.

Main entry point for dispatching chat requests to LLM vendors:
  1. Resolves the model (request → caller default → vendor default)
  2. Negotiates capabilities, stripping unsupported tools / web search
  3. Dispatches via the vendor adapter (buffered or streaming)
  4. Adapters retry through the shared executor and normalize responses

Usage:
    gateway = LlmGateway(api_keys={"openai": "sk-...", "claude": "..."})

    result = await gateway.generate("openai", request)
    print(result.response.content, result.warnings)

    stream = gateway.stream("claude", request, StreamingOptions(signal=event))
    async for chunk in stream.chunks:
        ...
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field

import httpx

from llm_gateway.core.metrics import GENERATIONS
from llm_gateway.gateway.capabilities import NegotiationResult, negotiate
from llm_gateway.gateway.errors import ErrorCode, ProviderError
from llm_gateway.gateway.types import (
    GatewayVendor,
    NormalizedRequest,
    NormalizedResponse,
    ProviderCapabilities,
    ProviderConfig,
    RetryPolicy,
    StreamingChunk,
    StreamingOptions,
)
from llm_gateway.gateway.vendor_adapters import BaseVendorAdapter, create_adapter

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    response: NormalizedResponse
    warnings: list[str] = field(default_factory=list)
    model: str = ""


@dataclass
class GenerationStream:
    chunks: AsyncIterator[StreamingChunk]
    warnings: list[str] = field(default_factory=list)
    model: str = ""


class LlmGateway:
    """Main gateway facade.

    Holds one lazily created adapter per configured vendor. Calls share no
    mutable state beyond that cache.
    """

    def __init__(
        self,
        api_keys: Mapping[str, str] | None = None,
        base_urls: Mapping[str, str] | None = None,
        default_models: Mapping[str, str] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        stream_retry_policy: RetryPolicy | None = None,
    ):
        """
        Args:
            api_keys: Mapping of vendor name → API key
            base_urls: Optional per-vendor base URL overrides (validated)
            default_models: Per-vendor default model for this caller
            transport: httpx transport injected into every adapter (tests)
        """
        self.api_keys = {k.lower(): v for k, v in (api_keys or {}).items() if v}
        self.base_urls = {k.lower(): v for k, v in (base_urls or {}).items() if v}
        self.default_models = {k.lower(): v for k, v in (default_models or {}).items() if v}
        self._adapter_kwargs = {
            "transport": transport,
            "retry_policy": retry_policy,
            "stream_retry_policy": stream_retry_policy,
        }
        self._adapters: dict[GatewayVendor, BaseVendorAdapter] = {}

    @staticmethod
    def _vendor(vendor: GatewayVendor | str) -> GatewayVendor:
        try:
            return GatewayVendor(vendor.lower() if isinstance(vendor, str) else vendor)
        except ValueError:
            raise ValueError(f"No adapter registered for vendor: {vendor}") from None

    def get_adapter(self, vendor: GatewayVendor | str) -> BaseVendorAdapter:
        """Get or create the adapter for a vendor."""
        key = self._vendor(vendor)
        if key not in self._adapters:
            api_key = self.api_keys.get(key.value, "")
            if not api_key:
                raise ProviderError(
                    f"No API key configured for {key.value}",
                    401,
                    retryable=False,
                    error_code=ErrorCode.MISSING_KEY,
                )
            self._adapters[key] = create_adapter(
                key, api_key, self.base_urls.get(key.value), **self._adapter_kwargs
            )
        return self._adapters[key]

    def config_for(self, vendor: GatewayVendor | str) -> ProviderConfig:
        key = self._vendor(vendor)
        return ProviderConfig(
            vendor=key,
            base_url=self.base_urls.get(key.value),
            default_model=self.default_models.get(key.value),
        )

    def capabilities(self, vendor: GatewayVendor | str, model: str = "") -> ProviderCapabilities:
        return self.get_adapter(vendor).capabilities(model)

    def prepare(self, vendor: GatewayVendor | str, request: NormalizedRequest) -> NegotiationResult:
        """Resolve the model and negotiate the request against the adapter."""
        adapter = self.get_adapter(vendor)
        model = adapter.resolve_model(self.config_for(vendor), request)
        return negotiate(adapter.vendor, dataclasses.replace(request, model=model), adapter.capability_flags)

    async def generate(self, vendor: GatewayVendor | str, request: NormalizedRequest) -> GenerationResult:
        adapter = self.get_adapter(vendor)
        negotiated = self.prepare(vendor, request)
        label = adapter.vendor.value

        try:
            response = await adapter.generate(self.config_for(vendor), negotiated.request)
        except ProviderError as exc:
            GENERATIONS.labels(vendor=label, outcome=exc.error_code.value).inc()
            logger.warning("Generation failed for %s/%s: %s", label, negotiated.request.model, exc.message)
            raise

        GENERATIONS.labels(vendor=label, outcome="ok").inc()
        return GenerationResult(response=response, warnings=negotiated.warnings, model=negotiated.request.model)

    def stream(
        self,
        vendor: GatewayVendor | str,
        request: NormalizedRequest,
        options: StreamingOptions | None = None,
    ) -> GenerationStream:
        adapter = self.get_adapter(vendor)
        negotiated = self.prepare(vendor, request)
        chunks = adapter.generate_stream(self.config_for(vendor), negotiated.request, options)
        return GenerationStream(chunks=chunks, warnings=negotiated.warnings, model=negotiated.request.model)

    def get_status(self) -> dict:
        return {"configured_vendors": sorted(self.api_keys)}
