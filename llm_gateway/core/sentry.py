"""Sentry error tracking integration.

Enabled only when SENTRY_DSN is set. Gateway requests carry vendor API keys
in headers and bodies, so events are scrubbed before they leave the process.
"""

import logging

from llm_gateway.core.config import settings
from llm_gateway.core.logging import REDACTED

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key", "cookie"})
SENSITIVE_FIELDS = frozenset({"api_key", "apikey", "key"})


def _scrub_mapping(data: dict, sensitive: frozenset[str]) -> dict:
    return {k: (REDACTED if str(k).lower() in sensitive else v) for k, v in data.items()}


def scrub_event(event: dict, hint: dict | None = None) -> dict:
    """``before_send`` hook: mask credentials in the captured request."""
    request = event.get("request")
    if isinstance(request, dict):
        if isinstance(request.get("headers"), dict):
            request["headers"] = _scrub_mapping(request["headers"], SENSITIVE_HEADERS)
        if isinstance(request.get("data"), dict):
            request["data"] = _scrub_mapping(request["data"], SENSITIVE_FIELDS)
        if isinstance(request.get("query_string"), str) and "key=" in request["query_string"]:
            request["query_string"] = REDACTED
    return event


def init_sentry() -> None:
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=scrub_event,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
