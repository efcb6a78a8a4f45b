"""Retry Executor: one HTTP call with timeout, retry and backoff.

Shared by every vendor adapter (buffered and streaming):
  - per-attempt ceiling enforced with asyncio.wait_for; a timeout is a
    retryable network failure
  - an external cancellation signal (asyncio.Event) aborts the in-flight
    attempt or backoff sleep immediately; no further attempts are made
  - statuses 408/429/500/502/503/504 are retried, everything else fails fast
  - attempts are strictly sequential

Backoff strategy:
  delay = Retry-After if the server sent one, else
  delay = base * 2^attempt * uniform(0.5, 1.0)
  capped at max_retry_delay in both cases.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from llm_gateway.core.metrics import UPSTREAM_ATTEMPTS
from llm_gateway.gateway.errors import ErrorCode, ProviderError, is_retryable_status
from llm_gateway.gateway.types import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


class _Aborted(Exception):
    """The external cancellation signal fired."""


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
) -> float:
    """Calculate exponential backoff with multiplicative jitter.

    Formula: min(base * 2^attempt * uniform(0.5, 1.0), max_delay)
    """
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0.5, 1.0)
    return min(exponential * jitter, max_delay)


def parse_retry_after(headers: httpx.Headers) -> float | None:
    """Read the server's requested delay in seconds.

    Understands ``retry-after-ms`` (milliseconds) and ``retry-after`` given as
    seconds or as an HTTP-date.
    """
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(0.0, float(raw_ms) / 1000.0)
        except ValueError:
            pass

    raw = (headers.get("retry-after") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


async def _run_attempt(
    client: httpx.AsyncClient,
    request: httpx.Request,
    stream: bool,
    timeout: float,
    signal: asyncio.Event | None,
) -> httpx.Response:
    send = asyncio.wait_for(client.send(request, stream=stream), timeout)
    if signal is None:
        return await send

    task = asyncio.ensure_future(send)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    (outcome,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(outcome, httpx.Response):
        await outcome.aclose()
    raise _Aborted


async def _backoff_sleep(delay: float, signal: asyncio.Event | None) -> None:
    if signal is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise _Aborted


async def _read_error_body(resp: httpx.Response, stream: bool) -> str:
    try:
        if stream:
            await resp.aread()
        text = resp.text
    except httpx.HTTPError:
        text = ""
    finally:
        if stream:
            await resp.aclose()
    return text[:_ERROR_BODY_LIMIT] or "Unknown error"


def _aborted_error() -> ProviderError:
    return ProviderError("Request aborted", 408, retryable=True, error_code=ErrorCode.TIMEOUT)


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str,
    headers: dict[str, str] | None,
    json: object | None,
    params: dict[str, str] | None,
    policy: RetryPolicy,
    signal: asyncio.Event | None,
    stream: bool,
    vendor: str,
) -> httpx.Response:
    label = vendor or "unknown"
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        if signal is not None and signal.is_set():
            UPSTREAM_ATTEMPTS.labels(vendor=label, outcome="aborted").inc()
            raise _aborted_error()

        request = client.build_request(method, url, headers=headers, json=json, params=params)
        retry_after: float | None = None

        try:
            resp = await _run_attempt(client, request, stream, policy.timeout_seconds, signal)
        except _Aborted:
            UPSTREAM_ATTEMPTS.labels(vendor=label, outcome="aborted").inc()
            raise _aborted_error() from None
        except (asyncio.TimeoutError, httpx.TimeoutException):
            outcome = "timeout"
            error = ProviderError("Request timeout", 408, retryable=True, error_code=ErrorCode.TIMEOUT)
        except httpx.TransportError as exc:
            outcome = "network"
            error = ProviderError(f"Network error: {exc}", 0, retryable=True, error_code=ErrorCode.NETWORK)
        else:
            if resp.is_success:
                UPSTREAM_ATTEMPTS.labels(vendor=label, outcome="ok").inc()
                return resp

            body = await _read_error_body(resp, stream)
            if not is_retryable_status(resp.status_code):
                UPSTREAM_ATTEMPTS.labels(vendor=label, outcome="fatal_status").inc()
                raise ProviderError(
                    f"Provider API error {resp.status_code}: {body}",
                    resp.status_code,
                    retryable=False,
                )

            outcome = "retryable_status"
            retry_after = parse_retry_after(resp.headers)
            error = ProviderError(
                f"Provider API error {resp.status_code} after {attempts} attempts: {body}",
                resp.status_code,
                retryable=True,
                retry_after=retry_after,
            )

        UPSTREAM_ATTEMPTS.labels(vendor=label, outcome=outcome).inc()

        if attempt == attempts - 1:
            logger.warning("Giving up on %s %s after %d attempts: %s", label, url, attempts, error.message)
            raise error

        if retry_after is not None:
            delay = min(retry_after, policy.max_retry_delay)
        else:
            delay = calculate_backoff(attempt, policy.base_retry_delay, policy.max_retry_delay)

        logger.info(
            "Retry %d/%d for %s in %.1fs (%s)",
            attempt + 1,
            attempts - 1,
            label,
            delay,
            outcome,
        )
        try:
            await _backoff_sleep(delay, signal)
        except _Aborted:
            UPSTREAM_ATTEMPTS.labels(vendor=label, outcome="aborted").inc()
            raise _aborted_error() from None

    raise RuntimeError("Unexpected retry loop exit")


async def fetch_with_retry(
    url: str,
    *,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    json: object | None = None,
    params: dict[str, str] | None = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    signal: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    stream: bool = False,
    vendor: str = "",
) -> httpx.Response:
    """Perform an HTTP call with timeout, retry and backoff.

    Returns the first successful response. With ``stream=True`` the body is
    left unread and the caller owns closing it (a caller-owned ``client`` is
    required in that case). Raises ProviderError otherwise.
    """
    kwargs = dict(
        method=method,
        headers=headers,
        json=json,
        params=params,
        policy=policy,
        signal=signal,
        stream=stream,
        vendor=vendor,
    )
    if client is not None:
        return await _fetch(client, url, **kwargs)

    if stream:
        raise ValueError("stream=True requires a caller-owned client")

    async with httpx.AsyncClient(transport=transport, timeout=policy.timeout_seconds) as own_client:
        return await _fetch(own_client, url, **kwargs)
