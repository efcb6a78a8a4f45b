"""Base-URL Resolver & Validator.

Turns a vendor id and an optional caller-supplied URL into a canonical root:
  1. must parse as an absolute URL
  2. scheme must be https
  3. host must not be loopback / private / link-local (SSRF protection)
  4. host must be on the vendor's allow-list (known vendors only)
  5. trailing slashes stripped
  6. vendor-specific path suffix normalized (``/v1`` for OpenAI-family roots,
     none for Claude and Gemini, whose adapters append their own versions)
"""

from __future__ import annotations

import ipaddress
import logging
import re
from urllib.parse import urlsplit

from llm_gateway.gateway.types import GatewayVendor

logger = logging.getLogger(__name__)


class BaseURLError(ValueError):
    """Raised when a caller-supplied base URL fails validation."""


PROVIDER_BASE_URLS: dict[str, str] = {
    GatewayVendor.OPENAI.value: "https://api.openai.com/v1",
    GatewayVendor.CLAUDE.value: "https://api.anthropic.com",
    GatewayVendor.GEMINI.value: "https://generativelanguage.googleapis.com",
}

ALLOWED_PROVIDER_HOSTS: dict[str, tuple[str, ...]] = {
    GatewayVendor.OPENAI.value: ("api.openai.com", "api.azure.com", "openai.azure.com"),
    GatewayVendor.CLAUDE.value: ("api.anthropic.com",),
    GatewayVendor.GEMINI.value: ("generativelanguage.googleapis.com",),
}

_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "0.0.0.0/8",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

_OPENAI_STYLE_VENDORS = (GatewayVendor.OPENAI.value, GatewayVendor.CUSTOM.value)
_VERSION_SUFFIX = re.compile(r"/v1(beta)?$", re.IGNORECASE)


def _vendor_key(vendor: GatewayVendor | str) -> str:
    return vendor.value if isinstance(vendor, GatewayVendor) else str(vendor).lower()


def _is_private_host(hostname: str) -> bool:
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return any(ip in net for net in _PRIVATE_NETWORKS)


def _normalize_path(vendor: str, url: str) -> str:
    if vendor in _OPENAI_STYLE_VENDORS:
        if _VERSION_SUFFIX.search(url):
            return url
        return f"{url}/v1"
    if vendor in (GatewayVendor.CLAUDE.value, GatewayVendor.GEMINI.value):
        return _VERSION_SUFFIX.sub("", url)
    return url


def validate_base_url(vendor: GatewayVendor | str, url: str) -> None:
    """Raise BaseURLError if ``url`` is not an acceptable root for ``vendor``."""
    key = _vendor_key(vendor)
    try:
        parsed = urlsplit(url.strip())
    except ValueError as exc:
        raise BaseURLError("Invalid URL format") from exc

    if not parsed.scheme or not parsed.netloc:
        raise BaseURLError("Invalid URL format")

    if parsed.scheme.lower() != "https":
        raise BaseURLError("Only HTTPS URLs are allowed")

    hostname = (parsed.hostname or "").lower().rstrip(".")
    if not hostname:
        raise BaseURLError("Invalid URL format")

    if _is_private_host(hostname):
        raise BaseURLError("Private/loopback addresses are not allowed")

    allowed = ALLOWED_PROVIDER_HOSTS.get(key)
    if allowed and not any(hostname == h or hostname.endswith("." + h) for h in allowed):
        raise BaseURLError(f"Custom URL must be from allowed domains for {key}")


def get_provider_base_url(vendor: GatewayVendor | str, custom_base_url: str | None = None) -> str:
    """Resolve the canonical endpoint root for ``vendor``."""
    key = _vendor_key(vendor)

    if custom_base_url and custom_base_url.strip():
        validate_base_url(key, custom_base_url)
        url = custom_base_url.strip().rstrip("/")
        normalized = _normalize_path(key, url)
        if normalized != url:
            logger.debug("Normalized %s base URL %s -> %s", key, url, normalized)
        return normalized

    url = PROVIDER_BASE_URLS.get(key)
    if not url:
        raise ValueError(f"Unknown provider type: {key}")
    return url
