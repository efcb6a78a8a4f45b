"""Prometheus metrics for the gateway."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("llm_gateway", "LLM gateway application info")
APP_INFO.info({"version": "1.0.0", "name": "llm_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

UPSTREAM_ATTEMPTS = Counter(
    "llm_upstream_attempts_total",
    "HTTP attempts made by the retry executor",
    ["vendor", "outcome"],  # outcome: ok | retryable_status | fatal_status | timeout | network | aborted
)

GENERATIONS = Counter(
    "llm_generations_total",
    "Buffered generations by vendor and outcome",
    ["vendor", "outcome"],
)

STREAM_CHUNKS = Counter(
    "llm_stream_chunks_total",
    "Streaming chunks emitted, by vendor and chunk type",
    ["vendor", "type"],
)

WEB_SEARCH_CALLS = Counter(
    "web_search_calls_total",
    "Web-search vendor calls by provider and outcome",
    ["provider", "outcome"],
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/providers/",)


def _normalize_path(path: str) -> str:
    """Replace the vendor segment in provider paths with {vendor}."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 1)
            tail = f"/{parts[1]}" if len(parts) > 1 else ""
            return f"{prefix}{{vendor}}{tail}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
