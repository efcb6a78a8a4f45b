"""Streaming: incremental parsers for vendor token streams.

Each vendor frames its stream differently:
  - OpenAI family: ``data: {json}`` lines ending with ``data: [DONE]``
  - Claude: ``event:`` / ``data:`` pairs with typed envelopes
    (content_block_delta carries text, message_start / message_delta carry usage)
  - Gemini: newline-delimited JSON candidate objects

All three share one line-buffering state machine: bytes are decoded
incrementally, only complete lines are handed to the vendor handler, and a
partial trailing line is carried over to the next read. Malformed lines are
skipped. The stream ends with exactly one ``done`` or ``error`` chunk, and the
underlying reader is released exactly once, before the terminal chunk is
handed out. Tool calls (OpenAI ``delta.tool_calls`` fragments, Gemini
``functionCall`` parts) are accumulated into the ``done`` response.
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import json
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from llm_gateway.core.metrics import STREAM_CHUNKS
from llm_gateway.gateway.errors import ProviderError, StreamError
from llm_gateway.gateway.retry import fetch_with_retry
from llm_gateway.gateway.types import (
    DEFAULT_STREAM_RETRY_POLICY,
    ChunkType,
    NormalizedResponse,
    RetryPolicy,
    StreamingChunk,
    StreamingOptions,
    ToolCall,
    Usage,
)

logger = logging.getLogger(__name__)

STREAM_ABORTED_MESSAGE = "Stream aborted"


class ByteStreamReader(Protocol):
    """Pull-based byte source. ``read`` returns ``b""`` once the body is exhausted."""

    async def read(self) -> bytes: ...

    async def release(self) -> None: ...


class HttpxStreamReader:
    """ByteStreamReader over a streamed httpx response (and its client)."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient | None = None):
        self._response = response
        self._client = client
        self._iterator = response.aiter_bytes()
        self._released = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def read(self) -> bytes:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return b""

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._response.aclose()
        finally:
            if self._client is not None:
                await self._client.aclose()


class _Cancelled(Exception):
    pass


@dataclass
class _StreamState:
    """Metadata accumulated while parsing one stream."""

    parts: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    # index -> {"id", "name", "arguments"}; OpenAI sends arguments in fragments
    tool_calls: dict[int, dict[str, str]] = field(default_factory=dict)

    def add_tool_call_delta(self, index: int, call_id: str | None, name: str | None, arguments: str | None) -> None:
        call = self.tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if call_id:
            call["id"] = call_id
        if name:
            call["name"] += name
        if arguments:
            call["arguments"] += arguments

    def to_response(self) -> NormalizedResponse:
        usage = None
        if self.prompt_tokens or self.completion_tokens:
            usage = Usage(
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
                total_tokens=self.prompt_tokens + self.completion_tokens,
            )
        tool_calls = [
            ToolCall(id=call["id"] or f"call_{index}", name=call["name"], arguments=call["arguments"] or "{}")
            for index, call in sorted(self.tool_calls.items())
        ]
        return NormalizedResponse(
            content="".join(self.parts),
            usage=usage,
            tool_calls=tool_calls or None,
            finish_reason="tool_calls" if tool_calls else self.finish_reason,
        )


LineHandler = Callable[[str, _StreamState], Iterable[str]]


# ---------------------------------------------------------------------------
# Vendor line handlers
# ---------------------------------------------------------------------------


def _sse_payload(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def _handle_openai_line(line: str, state: _StreamState) -> list[str]:
    payload = _sse_payload(line)
    if not payload or payload == "[DONE]":
        return []

    data = json.loads(payload)
    if not isinstance(data, dict):
        return []
    if data.get("error"):
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderError(f"OpenAI stream error: {message}", 500, retryable=True)

    tokens: list[str] = []
    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        choice = choices[0]
        delta = choice.get("delta") or {}
        text = delta.get("content")
        if text:
            tokens.append(text)
        for call in delta.get("tool_calls") or []:
            function = call.get("function") or {}
            state.add_tool_call_delta(
                call.get("index", 0), call.get("id"), function.get("name"), function.get("arguments")
            )
        if choice.get("finish_reason"):
            state.finish_reason = choice["finish_reason"]

    usage = data.get("usage")
    if isinstance(usage, dict):
        state.prompt_tokens = usage.get("prompt_tokens") or 0
        state.completion_tokens = usage.get("completion_tokens") or 0
    return tokens


def _handle_claude_line(line: str, state: _StreamState) -> list[str]:
    if line.startswith("event:"):
        return []
    payload = _sse_payload(line)
    if not payload:
        return []

    data = json.loads(payload)
    if not isinstance(data, dict):
        return []

    event_type = data.get("type")
    if event_type == "content_block_delta":
        text = (data.get("delta") or {}).get("text")
        return [text] if text else []

    if event_type == "message_start":
        usage = (data.get("message") or {}).get("usage") or {}
        state.prompt_tokens = usage.get("input_tokens") or 0
    elif event_type == "message_delta":
        usage = data.get("usage") or {}
        state.completion_tokens = usage.get("output_tokens") or state.completion_tokens
        stop_reason = (data.get("delta") or {}).get("stop_reason")
        if stop_reason:
            state.finish_reason = stop_reason
    elif event_type == "error":
        message = (data.get("error") or {}).get("message", "unknown error")
        raise ProviderError(f"Claude stream error: {message}", 500, retryable=True)
    return []


def _handle_gemini_line(line: str, state: _StreamState) -> list[str]:
    # alt=sse wraps each object in a data: line; bare NDJSON has no prefix
    payload = _sse_payload(line)
    if payload is None:
        payload = line
    if not payload:
        return []

    data = json.loads(payload)
    if not isinstance(data, dict):
        return []

    tokens: list[str] = []
    candidates = data.get("candidates") or []
    if candidates and isinstance(candidates[0], dict):
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text") if isinstance(part, dict) else None
            if text:
                tokens.append(text)
            function_call = part.get("functionCall") if isinstance(part, dict) else None
            if isinstance(function_call, dict):
                state.add_tool_call_delta(
                    len(state.tool_calls), None, function_call.get("name"), json.dumps(function_call.get("args") or {})
                )
        if candidate.get("finishReason"):
            state.finish_reason = candidate["finishReason"]

    usage = data.get("usageMetadata")
    if isinstance(usage, dict):
        state.prompt_tokens = usage.get("promptTokenCount") or state.prompt_tokens
        state.completion_tokens = usage.get("candidatesTokenCount") or state.completion_tokens
    return tokens


# ---------------------------------------------------------------------------
# Shared state machine
# ---------------------------------------------------------------------------


async def _read_or_cancel(reader: ByteStreamReader, signal: asyncio.Event | None) -> bytes:
    if signal is None:
        return await reader.read()

    read_task = asyncio.ensure_future(reader.read())
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({read_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read_task.cancel()
        waiter.cancel()
        raise

    if read_task in done:
        waiter.cancel()
        return read_task.result()

    read_task.cancel()
    await asyncio.gather(read_task, return_exceptions=True)
    raise _Cancelled


def _is_set(signal: asyncio.Event | None) -> bool:
    return signal is not None and signal.is_set()


async def _parse_stream(
    reader: ByteStreamReader,
    handle_line: LineHandler,
    signal: asyncio.Event | None,
    vendor: str,
) -> AsyncIterator[StreamingChunk]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    state = _StreamState()
    buffer = ""
    terminal: StreamingChunk | None = None

    try:
        while terminal is None:
            if _is_set(signal):
                terminal = StreamingChunk.error_chunk(STREAM_ABORTED_MESSAGE)
                break

            try:
                data = await _read_or_cancel(reader, signal)
            except _Cancelled:
                terminal = StreamingChunk.error_chunk(STREAM_ABORTED_MESSAGE)
                break
            except (httpx.HTTPError, OSError) as exc:
                logger.warning("%s stream read failed: %s", vendor, exc)
                terminal = StreamingChunk.error_chunk(f"Stream read failed: {exc}")
                break

            final = not data
            buffer += decoder.decode(data, final=final)
            lines = buffer.split("\n")
            buffer = "" if final else lines.pop()

            for line in lines:
                try:
                    tokens = handle_line(line.strip(), state)
                except ProviderError as exc:
                    terminal = StreamingChunk.error_chunk(exc.message)
                    break
                except (ValueError, TypeError, AttributeError, LookupError):
                    logger.debug("Skipping malformed %s stream line: %.120s", vendor, line)
                    continue

                for token in tokens:
                    if _is_set(signal):
                        terminal = StreamingChunk.error_chunk(STREAM_ABORTED_MESSAGE)
                        break
                    state.parts.append(token)
                    STREAM_CHUNKS.labels(vendor=vendor, type=ChunkType.TOKEN.value).inc()
                    yield StreamingChunk.token_chunk(token)

                if terminal is not None:
                    break

            if terminal is None and final:
                terminal = StreamingChunk.done_chunk(state.to_response())
    finally:
        await reader.release()

    if terminal.type == ChunkType.ERROR:
        logger.info("%s stream terminated: %s", vendor, terminal.error)
    STREAM_CHUNKS.labels(vendor=vendor, type=terminal.type.value).inc()
    yield terminal


def parse_openai_stream(
    reader: ByteStreamReader, signal: asyncio.Event | None = None
) -> AsyncIterator[StreamingChunk]:
    return _parse_stream(reader, _handle_openai_line, signal, "openai")


def parse_claude_stream(
    reader: ByteStreamReader, signal: asyncio.Event | None = None
) -> AsyncIterator[StreamingChunk]:
    return _parse_stream(reader, _handle_claude_line, signal, "claude")


def parse_gemini_stream(
    reader: ByteStreamReader, signal: asyncio.Event | None = None
) -> AsyncIterator[StreamingChunk]:
    return _parse_stream(reader, _handle_gemini_line, signal, "gemini")


StreamParser = Callable[[ByteStreamReader, "asyncio.Event | None"], AsyncIterator[StreamingChunk]]


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


async def open_stream(
    url: str,
    *,
    headers: dict[str, str],
    json: Any,
    params: dict[str, str] | None = None,
    policy: RetryPolicy = DEFAULT_STREAM_RETRY_POLICY,
    signal: asyncio.Event | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    vendor: str = "",
) -> HttpxStreamReader:
    """Issue a streaming request and return a reader over its body.

    Retryable statuses and connection failures before the first byte are
    retried by the shared executor.
    """
    client = httpx.AsyncClient(transport=transport, timeout=policy.timeout_seconds)
    try:
        response = await fetch_with_retry(
            url,
            headers=headers,
            json=json,
            params=params,
            policy=policy,
            signal=signal,
            client=client,
            stream=True,
            vendor=vendor,
        )
    except BaseException:
        await client.aclose()
        raise
    return HttpxStreamReader(response, client)


async def stream_completion(
    url: str,
    *,
    headers: dict[str, str],
    json: Any,
    parser: StreamParser,
    params: dict[str, str] | None = None,
    options: StreamingOptions | None = None,
    policy: RetryPolicy = DEFAULT_STREAM_RETRY_POLICY,
    transport: httpx.AsyncBaseTransport | None = None,
    vendor: str = "",
) -> AsyncIterator[StreamingChunk]:
    """Open a vendor stream and yield parsed chunks.

    Failures before the body starts (non-success status, connection errors)
    become a single error chunk.
    """
    signal = options.signal if options else None
    if options and options.timeout_seconds:
        policy = dataclasses.replace(policy, timeout_seconds=options.timeout_seconds)

    try:
        reader = await open_stream(
            url,
            headers=headers,
            json=json,
            params=params,
            policy=policy,
            signal=signal,
            transport=transport,
            vendor=vendor,
        )
    except ProviderError as exc:
        logger.warning("%s stream could not be opened: %s", vendor or "vendor", exc.message)
        STREAM_CHUNKS.labels(vendor=vendor or "unknown", type=ChunkType.ERROR.value).inc()
        yield StreamingChunk.error_chunk(exc.message)
        return

    async for chunk in parser(reader, signal):
        yield chunk


# ---------------------------------------------------------------------------
# Consumers
# ---------------------------------------------------------------------------


def encode_sse(chunk: StreamingChunk) -> bytes:
    return f"data: {json.dumps(chunk.to_dict(), ensure_ascii=False)}\n\n".encode("utf-8")


async def stream_to_sse(chunks: AsyncIterator[StreamingChunk]) -> AsyncIterator[bytes]:
    """Encode a chunk stream as text/event-stream records.

    The output ends right after the terminal chunk.
    """
    try:
        async for chunk in chunks:
            yield encode_sse(chunk)
            if chunk.is_terminal:
                return
    except Exception as exc:
        logger.exception("Streaming source failed")
        yield encode_sse(StreamingChunk.error_chunk(str(exc) or type(exc).__name__))
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


async def collect_stream(
    chunks: AsyncIterator[StreamingChunk],
    on_token: Callable[[str], None] | None = None,
) -> NormalizedResponse:
    """Drain a chunk stream into one NormalizedResponse.

    Raises StreamError if the stream terminates with an error chunk.
    """
    response = NormalizedResponse()
    try:
        async for chunk in chunks:
            if chunk.type == ChunkType.TOKEN:
                if chunk.token and on_token is not None:
                    on_token(chunk.token)
            elif chunk.type == ChunkType.DONE:
                response = chunk.response or NormalizedResponse()
                break
            else:
                raise StreamError(chunk.error or "Streaming error")
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
    return response
