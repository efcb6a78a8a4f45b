"""Capability Registry & Negotiator.

Static, immutable tables describing what each vendor supports, plus model-name
prefix heuristics for vendors whose web search varies by model family.
``negotiate`` applies them to a request before dispatch: unsupported features
are stripped and reported as warnings, never raised.

Vendor-native web search is only honored when the vendor/model also supports
tool calling.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from llm_gateway.gateway.types import GatewayVendor, NormalizedRequest, ProviderCapabilities

logger = logging.getLogger(__name__)

TOOLS_DISABLED_WARNING = "tools_disabled_for_provider_or_model"
WEB_SEARCH_DISABLED_WARNING = "model_web_search_disabled_for_provider_or_model"

_NO_CAPABILITIES = ProviderCapabilities()

_CAPABILITY_TABLE: Mapping[str, ProviderCapabilities] = MappingProxyType(
    {
        GatewayVendor.OPENAI.value: ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_model_web_search=True,
            supports_vision=True,
            supports_embeddings=True,
            supports_image_gen=True,
        ),
        GatewayVendor.CLAUDE.value: ProviderCapabilities(
            supports_streaming=True,
            supports_tools=False,
            supports_model_web_search=False,
            supports_vision=True,
        ),
        GatewayVendor.GEMINI.value: ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_model_web_search=True,
            supports_vision=True,
            supports_embeddings=True,
        ),
        GatewayVendor.CUSTOM.value: ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
        ),
    }
)

# Model families with vendor-native web search. Everything else is downgraded.
_OPENAI_WEB_SEARCH_PREFIXES = ("gpt-4o", "gpt-4.1", "gpt-5", "o3", "o4")
_GEMINI_WEB_SEARCH_PREFIXES = ("gemini-1.5", "gemini-2", "gemini-3")

_OVERRIDABLE_FIELDS = frozenset(f.name for f in dataclasses.fields(ProviderCapabilities))


def _vendor_key(vendor: GatewayVendor | str) -> str:
    return vendor.value if isinstance(vendor, GatewayVendor) else str(vendor).lower()


def _model_supports_web_search(vendor: str, model: str) -> bool:
    name = (model or "").lower()
    if vendor == GatewayVendor.OPENAI.value:
        return name.startswith(_OPENAI_WEB_SEARCH_PREFIXES)
    if vendor == GatewayVendor.GEMINI.value:
        return name.startswith(_GEMINI_WEB_SEARCH_PREFIXES)
    return False


def get_provider_capabilities(
    vendor: GatewayVendor | str,
    model: str = "",
    adapter_overrides: Mapping[str, bool] | None = None,
) -> ProviderCapabilities:
    """Pure lookup of what ``vendor`` + ``model`` supports.

    ``adapter_overrides`` holds flags reported by an adapter instance; they win
    over the table. Unknown flag names are ignored.
    """
    key = _vendor_key(vendor)
    caps = _CAPABILITY_TABLE.get(key, _NO_CAPABILITIES)

    if caps.supports_model_web_search and not _model_supports_web_search(key, model):
        caps = dataclasses.replace(caps, supports_model_web_search=False)

    if adapter_overrides:
        overrides = {k: bool(v) for k, v in adapter_overrides.items() if k in _OVERRIDABLE_FIELDS}
        if overrides:
            caps = dataclasses.replace(caps, **overrides)

    if caps.supports_model_web_search and not caps.supports_tools:
        caps = dataclasses.replace(caps, supports_model_web_search=False)

    return caps


@dataclass
class NegotiationResult:
    request: NormalizedRequest
    warnings: list[str] = field(default_factory=list)
    capabilities: ProviderCapabilities = _NO_CAPABILITIES


def negotiate(
    vendor: GatewayVendor | str,
    request: NormalizedRequest,
    adapter_overrides: Mapping[str, bool] | None = None,
) -> NegotiationResult:
    """Strip request features the vendor/model cannot honor.

    Idempotent and side-effect free: the input request is never mutated, and a
    request with no tools and no web search comes back unchanged.
    """
    capabilities = get_provider_capabilities(vendor, request.model, adapter_overrides)
    warnings: list[str] = []
    changes: dict = {}

    if request.tools and not capabilities.supports_tools:
        changes["tools"] = None
        changes["tool_choice"] = "none"
        warnings.append(TOOLS_DISABLED_WARNING)

    if request.web_search and not capabilities.supports_model_web_search:
        changes["web_search"] = False
        warnings.append(WEB_SEARCH_DISABLED_WARNING)

    if warnings:
        logger.warning(
            "Capability downgrade for %s/%s: %s",
            _vendor_key(vendor),
            request.model,
            ", ".join(warnings),
        )
        request = dataclasses.replace(request, **changes)

    return NegotiationResult(request=request, warnings=warnings, capabilities=capabilities)
