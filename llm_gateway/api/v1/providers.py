"""Provider discovery endpoints."""

from fastapi import APIRouter, Query

from llm_gateway.core.config import settings
from llm_gateway.gateway.base_url import PROVIDER_BASE_URLS
from llm_gateway.gateway.capabilities import get_provider_capabilities
from llm_gateway.gateway.types import GatewayVendor
from llm_gateway.schemas.gateway import CapabilitiesResponse, ProviderInfo

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[ProviderInfo])
async def list_providers():
    keys = settings.vendor_api_keys
    return [
        ProviderInfo(
            vendor=vendor,
            default_base_url=PROVIDER_BASE_URLS.get(vendor.value),
            configured=bool(keys.get(vendor.value)),
        )
        for vendor in GatewayVendor
    ]


@router.get("/{vendor}/capabilities", response_model=CapabilitiesResponse)
async def provider_capabilities(vendor: str, model: str | None = Query(default=None)):
    """Capabilities for a vendor/model pair. Unknown vendors report nothing supported."""
    caps = get_provider_capabilities(vendor, model or "")
    return CapabilitiesResponse(vendor=vendor.lower(), model=model, **caps.to_dict())
