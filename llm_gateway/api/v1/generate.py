"""Generation endpoints: buffered and SSE streaming."""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from llm_gateway.core.dependencies import build_gateway, get_http_transport
from llm_gateway.gateway.base_url import BaseURLError
from llm_gateway.gateway.normalizer import extract_cited_urls
from llm_gateway.gateway.streaming import stream_to_sse
from llm_gateway.schemas.gateway import GenerateRequest, GenerateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generate", tags=["generate"])


@router.post("", response_model=GenerateResponse)
async def generate(
    body: GenerateRequest,
    transport: httpx.AsyncBaseTransport | None = Depends(get_http_transport),
):
    """Negotiated buffered generation. Downgraded features are listed in ``warnings``."""
    gateway = build_gateway(body.vendor, body.api_key, body.base_url, body.default_model, transport)
    try:
        result = await gateway.generate(body.vendor, body.to_normalized())
    except BaseURLError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    response = result.response
    return GenerateResponse(
        vendor=body.vendor,
        model=result.model,
        content=response.content,
        usage=response.usage.to_dict() if response.usage else None,
        tool_calls=[tc.to_dict() for tc in response.tool_calls] if response.tool_calls else None,
        finish_reason=response.finish_reason,
        cited_urls=extract_cited_urls(response.content),
        warnings=result.warnings,
    )


@router.post("/stream")
async def generate_stream(
    body: GenerateRequest,
    transport: httpx.AsyncBaseTransport | None = Depends(get_http_transport),
):
    """Stream ``data: <chunk json>`` records; the body closes after the terminal chunk."""
    gateway = build_gateway(body.vendor, body.api_key, body.base_url, body.default_model, transport)
    try:
        stream = gateway.stream(body.vendor, body.to_normalized())
    except BaseURLError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    if stream.warnings:
        headers["X-Gateway-Warnings"] = ",".join(stream.warnings)

    logger.info("Streaming %s/%s", body.vendor.value, stream.model)
    return StreamingResponse(stream_to_sse(stream.chunks), media_type="text/event-stream", headers=headers)
