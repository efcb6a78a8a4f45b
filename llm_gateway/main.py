import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from llm_gateway.api.v1.router import api_v1_router
from llm_gateway.core.config import settings, validate_settings_for_production
from llm_gateway.core.logging import setup_logging
from llm_gateway.core.metrics import PrometheusMiddleware, metrics_response
from llm_gateway.core.sentry import init_sentry
from llm_gateway.gateway.base_url import BaseURLError
from llm_gateway.gateway.errors import ErrorCode, ProviderError
from llm_gateway.search.web_search import WebSearchError

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    configured = [vendor for vendor, key in settings.vendor_api_keys.items() if key]
    logger.info("Starting LLM gateway (env=%s, vendors with server keys: %s)", settings.app_env, configured or "none")

    yield

    # Shutdown
    logger.info("LLM gateway shut down")


app = FastAPI(
    title="LLM Gateway",
    description="Unified gateway over OpenAI, Claude and Gemini with web-search fallback",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


def _http_status(status: int | None) -> int:
    """Upstream 4xx pass through; everything else is a bad gateway."""
    if status and 400 <= status < 500:
        return status
    return 502


@app.exception_handler(ProviderError)
async def _provider_error_handler(request: Request, exc: ProviderError):
    logger.warning("Provider error on %s %s: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=_http_status(exc.status_code),
        content={"detail": exc.message, "code": exc.error_code.value, "retryable": exc.retryable},
    )


@app.exception_handler(WebSearchError)
async def _web_search_error_handler(request: Request, exc: WebSearchError):
    logger.warning("Web search error on %s %s: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=_http_status(exc.status),
        content={"detail": exc.message, "code": exc.code.value, "retryable": exc.retryable},
    )


@app.exception_handler(BaseURLError)
async def _base_url_error_handler(request: Request, exc: BaseURLError):
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "code": ErrorCode.INVALID_REQUEST.value, "retryable": False},
    )


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Prometheus request metrics
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    return {
        "status": "ok",
        "env": settings.app_env,
        "configured_vendors": sorted(vendor for vendor, key in settings.vendor_api_keys.items() if key),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
