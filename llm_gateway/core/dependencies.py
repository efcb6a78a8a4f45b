"""FastAPI dependencies shared by the v1 routes."""

import httpx

from llm_gateway.core.config import settings
from llm_gateway.gateway.gateway import LlmGateway
from llm_gateway.gateway.types import GatewayVendor


def get_http_transport() -> httpx.AsyncBaseTransport | None:
    """Outbound transport for vendor calls. None means the real network.

    Overridden in tests with an ``httpx.MockTransport``.
    """
    return None


def _is_server_base_url(vendor: GatewayVendor, base_url: str) -> bool:
    configured = settings.custom_base_url if vendor == GatewayVendor.CUSTOM else ""
    return bool(configured) and base_url.rstrip("/") == configured.rstrip("/")


def build_gateway(
    vendor: GatewayVendor,
    api_key: str | None = None,
    base_url: str | None = None,
    default_model: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LlmGateway:
    """Gateway for one request: server keys, overridden by the caller's.

    Server keys are only paired with the default or server-configured base
    URL. A caller-chosen base URL needs the caller's own key.
    """
    api_keys = dict(settings.vendor_api_keys)
    if api_key:
        api_keys[vendor.value] = api_key
    elif base_url and not _is_server_base_url(vendor, base_url):
        api_keys[vendor.value] = ""

    base_urls = {}
    if base_url:
        base_urls[vendor.value] = base_url
    elif vendor == GatewayVendor.CUSTOM and settings.custom_base_url:
        base_urls[vendor.value] = settings.custom_base_url

    return LlmGateway(
        api_keys=api_keys,
        base_urls=base_urls,
        default_models={vendor.value: default_model} if default_model else None,
        transport=transport,
        retry_policy=settings.retry_policy(),
        stream_retry_policy=settings.stream_retry_policy(),
    )
