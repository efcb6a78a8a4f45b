"""Tests for vendor stream parsing, SSE encoding and stream collection."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from llm_gateway.gateway.errors import StreamError
from llm_gateway.gateway.streaming import (
    STREAM_ABORTED_MESSAGE,
    HttpxStreamReader,
    collect_stream,
    encode_sse,
    parse_claude_stream,
    parse_gemini_stream,
    parse_openai_stream,
    stream_completion,
    stream_to_sse,
)
from llm_gateway.gateway.types import (
    ChunkType,
    GatewayVendor,
    Message,
    MessageRole,
    NormalizedRequest,
    NormalizedResponse,
    RetryPolicy,
    StreamingChunk,
    StreamingOptions,
)
from llm_gateway.gateway.vendor_adapters import create_adapter
from tests.conftest import Recorder

NO_RETRY = RetryPolicy(max_attempts=1, timeout_seconds=5.0)


class FakeReader:
    """In-memory ByteStreamReader that counts releases."""

    def __init__(self, *chunks: bytes, hang: bool = False):
        self.chunks = list(chunks)
        self.hang = hang
        self.released = 0
        self.events: list[str] = []

    async def read(self) -> bytes:
        if self.chunks:
            return self.chunks.pop(0)
        if self.hang:
            await asyncio.Event().wait()
        return b""

    async def release(self) -> None:
        self.released += 1
        self.events.append("release")


def _openai_line(text: str) -> bytes:
    payload = json.dumps({"choices": [{"delta": {"content": text}}]}, ensure_ascii=False)
    return f"data: {payload}\n\n".encode()


async def _drain(chunks) -> list[StreamingChunk]:
    return [chunk async for chunk in chunks]


async def _chunks(*items: StreamingChunk):
    for item in items:
        yield item


def _request(**kwargs) -> NormalizedRequest:
    return NormalizedRequest(messages=[Message(role=MessageRole.USER, content="Hi")], **kwargs)


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_tokens_then_done(self):
        reader = FakeReader(_openai_line("a"), _openai_line("b"), b"data: [DONE]\n\n")

        chunks = await _drain(parse_openai_stream(reader))

        assert [c.type for c in chunks] == [ChunkType.TOKEN, ChunkType.TOKEN, ChunkType.DONE]
        assert [c.token for c in chunks[:2]] == ["a", "b"]
        assert chunks[-1].response.content == "ab"
        assert reader.released == 1

    @pytest.mark.asyncio
    async def test_finish_reason_and_usage(self):
        reader = FakeReader(
            _openai_line("x"),
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n',
            b'data: {"choices":[],"usage":{"prompt_tokens":3,"completion_tokens":1}}\n\n',
            b"data: [DONE]\n\n",
        )

        done = (await _drain(parse_openai_stream(reader)))[-1]

        assert done.response.finish_reason == "stop"
        assert done.response.usage.total_tokens == 4

    @pytest.mark.asyncio
    async def test_tool_call_fragments_accumulate(self):
        reader = FakeReader(
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_a","type":"function",'
            b'"function":{"name":"get_weather","arguments":"{\\"ci"}}]}}]}\n\n',
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":{"arguments":"ty\\": \\"Oslo\\"}"}}]}}]}\n\n',
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":1,"id":"call_b","function":{"name":"now"}}]}}]}\n\n',
            b'data: {"choices":[{"delta":{},"finish_reason":"tool_calls"}]}\n\n',
            b"data: [DONE]\n\n",
        )

        chunks = await _drain(parse_openai_stream(reader))

        assert [c.type for c in chunks] == [ChunkType.DONE]
        response = chunks[-1].response
        assert response.content == ""
        assert response.finish_reason == "tool_calls"
        assert [(t.id, t.name) for t in response.tool_calls] == [("call_a", "get_weather"), ("call_b", "now")]
        assert json.loads(response.tool_calls[0].arguments) == {"city": "Oslo"}
        assert response.tool_calls[1].arguments == "{}"

    @pytest.mark.asyncio
    async def test_lines_split_across_reads(self):
        line = _openai_line("hello")
        reader = FakeReader(line[:10], line[10:25], line[25:], b"data: [DONE]\n\n")

        chunks = await _drain(parse_openai_stream(reader))

        assert [c.token for c in chunks if c.type == ChunkType.TOKEN] == ["hello"]

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_reads(self):
        line = _openai_line("привет")
        cut = line.index("п".encode()) + 1  # middle of a two-byte character
        reader = FakeReader(line[:cut], line[cut:])

        chunks = await _drain(parse_openai_stream(reader))

        assert chunks[0].token == "привет"
        assert chunks[-1].response.content == "привет"

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped(self):
        reader = FakeReader(b"data: {not json}\n\n", b": keep-alive\n\n", _openai_line("ok"), b"data: [DONE]\n\n")

        chunks = await _drain(parse_openai_stream(reader))

        assert [c.type for c in chunks] == [ChunkType.TOKEN, ChunkType.DONE]

    @pytest.mark.asyncio
    async def test_final_line_without_newline(self):
        reader = FakeReader(b'data: {"choices":[{"delta":{"content":"tail"}}]}')

        chunks = await _drain(parse_openai_stream(reader))

        assert chunks[0].token == "tail"
        assert chunks[-1].type == ChunkType.DONE

    @pytest.mark.asyncio
    async def test_error_payload_terminates(self):
        reader = FakeReader(_openai_line("a"), b'data: {"error":{"message":"overloaded"}}\n\n', _openai_line("b"))

        chunks = await _drain(parse_openai_stream(reader))

        assert [c.type for c in chunks] == [ChunkType.TOKEN, ChunkType.ERROR]
        assert "overloaded" in chunks[-1].error
        assert reader.released == 1

    @pytest.mark.asyncio
    async def test_release_happens_before_terminal_chunk(self):
        reader = FakeReader(_openai_line("a"))
        seen_release_count = None

        async for chunk in parse_openai_stream(reader):
            if chunk.is_terminal:
                seen_release_count = reader.released

        assert seen_release_count == 1

    @pytest.mark.asyncio
    async def test_read_failure_becomes_error_chunk(self):
        class BrokenReader(FakeReader):
            async def read(self) -> bytes:
                raise httpx.ReadError("connection reset")

        reader = BrokenReader()
        chunks = await _drain(parse_openai_stream(reader))

        assert len(chunks) == 1
        assert chunks[0].type == ChunkType.ERROR
        assert chunks[0].error.startswith("Stream read failed")
        assert reader.released == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_signal_set_before_first_read(self):
        signal = asyncio.Event()
        signal.set()
        reader = FakeReader(_openai_line("a"))

        chunks = await _drain(parse_openai_stream(reader, signal))

        assert [c.type for c in chunks] == [ChunkType.ERROR]
        assert chunks[0].error == STREAM_ABORTED_MESSAGE
        assert reader.released == 1

    @pytest.mark.asyncio
    async def test_signal_during_pending_read(self):
        signal = asyncio.Event()
        reader = FakeReader(_openai_line("a"), hang=True)
        chunks: list[StreamingChunk] = []

        async for chunk in parse_openai_stream(reader, signal):
            chunks.append(chunk)
            if chunk.type == ChunkType.TOKEN:
                asyncio.get_running_loop().call_later(0.01, signal.set)

        assert [c.type for c in chunks] == [ChunkType.TOKEN, ChunkType.ERROR]
        assert chunks[-1].error == STREAM_ABORTED_MESSAGE
        assert reader.released == 1

    @pytest.mark.asyncio
    async def test_no_tokens_after_abort(self):
        signal = asyncio.Event()
        reader = FakeReader(_openai_line("a") + _openai_line("b") + _openai_line("c"))
        tokens: list[str] = []

        async for chunk in parse_openai_stream(reader, signal):
            if chunk.type == ChunkType.TOKEN:
                tokens.append(chunk.token)
                signal.set()

        assert tokens == ["a"]
        assert reader.released == 1

    @pytest.mark.asyncio
    async def test_consumer_closing_early_releases(self):
        reader = FakeReader(_openai_line("a"), _openai_line("b"))
        stream = parse_openai_stream(reader)

        first = await stream.__anext__()
        await stream.aclose()

        assert first.token == "a"
        assert reader.released == 1


class TestClaudeStream:
    @pytest.mark.asyncio
    async def test_events(self):
        body = (
            b'event: message_start\ndata: {"type":"message_start","message":{"usage":{"input_tokens":7}}}\n\n'
            b'event: content_block_delta\ndata: {"type":"content_block_delta","delta":{"type":"text_delta","text":"Hel"}}\n\n'
            b'event: content_block_delta\ndata: {"type":"content_block_delta","delta":{"type":"text_delta","text":"lo"}}\n\n'
            b'event: message_delta\ndata: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":2}}\n\n'
            b'event: message_stop\ndata: {"type":"message_stop"}\n\n'
        )
        reader = FakeReader(body)

        chunks = await _drain(parse_claude_stream(reader))

        assert [c.token for c in chunks if c.type == ChunkType.TOKEN] == ["Hel", "lo"]
        done = chunks[-1].response
        assert done.content == "Hello"
        assert done.finish_reason == "end_turn"
        assert done.usage.prompt_tokens == 7
        assert done.usage.completion_tokens == 2

    @pytest.mark.asyncio
    async def test_error_event(self):
        reader = FakeReader(b'event: error\ndata: {"type":"error","error":{"message":"Overloaded"}}\n\n')

        chunks = await _drain(parse_claude_stream(reader))

        assert len(chunks) == 1
        assert chunks[0].type == ChunkType.ERROR
        assert "Overloaded" in chunks[0].error


class TestGeminiStream:
    @pytest.mark.asyncio
    async def test_sse_framed_objects(self):
        body = (
            b'data: {"candidates":[{"content":{"parts":[{"text":"Hi "}]}}]}\n\n'
            b'data: {"candidates":[{"content":{"parts":[{"text":"there"}]},"finishReason":"STOP"}],'
            b'"usageMetadata":{"promptTokenCount":4,"candidatesTokenCount":2}}\n\n'
        )

        chunks = await _drain(parse_gemini_stream(FakeReader(body)))

        assert [c.token for c in chunks if c.type == ChunkType.TOKEN] == ["Hi ", "there"]
        assert chunks[-1].response.finish_reason == "STOP"
        assert chunks[-1].response.usage.total_tokens == 6

    @pytest.mark.asyncio
    async def test_bare_json_lines(self):
        body = b'{"candidates":[{"content":{"parts":[{"text":"a"}]}}]}\n{"candidates":[{"content":{"parts":[{"text":"b"}]}}]}\n'

        chunks = await _drain(parse_gemini_stream(FakeReader(body)))

        assert chunks[-1].response.content == "ab"

    @pytest.mark.asyncio
    async def test_function_call_parts(self):
        body = (
            b'data: {"candidates":[{"content":{"parts":[{"text":"Checking"},'
            b'{"functionCall":{"name":"get_weather","args":{"city":"Oslo"}}}]},"finishReason":"STOP"}]}\n\n'
        )

        chunks = await _drain(parse_gemini_stream(FakeReader(body)))

        response = chunks[-1].response
        assert response.content == "Checking"
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].id == "call_0"
        assert response.tool_calls[0].name == "get_weather"
        assert json.loads(response.tool_calls[0].arguments) == {"city": "Oslo"}


class TestStreamCompletion:
    @pytest.mark.asyncio
    async def test_status_error_before_body_is_single_error_chunk(self):
        rec = Recorder(httpx.Response(401, text="invalid key"))

        chunks = await _drain(
            stream_completion(
                "https://api.openai.com/v1/chat/completions",
                headers={},
                json={},
                parser=parse_openai_stream,
                policy=NO_RETRY,
                transport=rec.transport,
            )
        )

        assert len(chunks) == 1
        assert chunks[0].type == ChunkType.ERROR
        assert "401" in chunks[0].error

    @pytest.mark.asyncio
    async def test_httpx_reader(self):
        rec = Recorder(httpx.Response(200, content=_openai_line("x") + b"data: [DONE]\n\n"))

        chunks = await _drain(
            stream_completion(
                "https://api.openai.com/v1/chat/completions",
                headers={},
                json={"stream": True},
                parser=parse_openai_stream,
                policy=NO_RETRY,
                transport=rec.transport,
            )
        )

        assert [c.type for c in chunks] == [ChunkType.TOKEN, ChunkType.DONE]

    @pytest.mark.asyncio
    async def test_httpx_reader_release_is_idempotent(self):
        async with httpx.AsyncClient(transport=Recorder(httpx.Response(200, content=b"abc")).transport) as client:
            request = client.build_request("GET", "https://example.com")
            response = await client.send(request, stream=True)
            reader = HttpxStreamReader(response)
            assert await reader.read() == b"abc"
            assert await reader.read() == b""
            await reader.release()
            await reader.release()
            assert response.is_closed


class TestAdapterStreams:
    @pytest.mark.asyncio
    async def test_openai_stream_request(self):
        rec = Recorder(httpx.Response(200, content=_openai_line("x") + b"data: [DONE]\n\n"))
        adapter = create_adapter("openai", "k", transport=rec.transport, stream_retry_policy=NO_RETRY)

        chunks = await _drain(adapter.generate_stream(None, _request(model="gpt-4o")))

        body = json.loads(rec.requests[0].content)
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert chunks[-1].response.content == "x"

    @pytest.mark.asyncio
    async def test_claude_stream_normalizes_finish_reason(self):
        body = (
            b'data: {"type":"content_block_delta","delta":{"text":"ok"}}\n\n'
            b'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":1}}\n\n'
        )
        rec = Recorder(httpx.Response(200, content=body))
        adapter = create_adapter(GatewayVendor.CLAUDE, "k", transport=rec.transport, stream_retry_policy=NO_RETRY)

        chunks = await _drain(adapter.generate_stream(None, _request()))

        assert rec.requests[0].url.path == "/v1/messages"
        assert json.loads(rec.requests[0].content)["stream"] is True
        assert chunks[-1].response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_gemini_stream_url(self):
        rec = Recorder(httpx.Response(200, content=b'data: {"candidates":[{"content":{"parts":[{"text":"g"}]}}]}\n\n'))
        adapter = create_adapter("gemini", "k", transport=rec.transport, stream_retry_policy=NO_RETRY)

        chunks = await _drain(adapter.generate_stream(None, _request(model="gemini-2.0-flash", web_search=True)))

        sent = rec.requests[0]
        assert sent.url.path == "/v1beta/models/gemini-2.0-flash:streamGenerateContent"
        assert sent.url.params["alt"] == "sse"
        assert json.loads(sent.content)["tools"] == [{"google_search": {}}]
        assert chunks[-1].response.content == "g"

    @pytest.mark.asyncio
    async def test_preset_signal_makes_no_call(self):
        rec = Recorder(httpx.Response(200, content=b""))
        adapter = create_adapter("openai", "k", transport=rec.transport, stream_retry_policy=NO_RETRY)
        signal = asyncio.Event()
        signal.set()

        chunks = await _drain(adapter.generate_stream(None, _request(), StreamingOptions(signal=signal)))

        assert rec.calls == 0
        assert [c.type for c in chunks] == [ChunkType.ERROR]


class TestConsumers:
    def test_encode_sse(self):
        assert encode_sse(StreamingChunk.token_chunk("hé")) == 'data: {"type": "token", "token": "hé"}\n\n'.encode()

    @pytest.mark.asyncio
    async def test_stream_to_sse_stops_after_terminal(self):
        source = _chunks(
            StreamingChunk.token_chunk("a"),
            StreamingChunk.done_chunk(NormalizedResponse(content="a")),
            StreamingChunk.token_chunk("late"),
        )

        records = [record async for record in stream_to_sse(source)]

        assert len(records) == 2
        assert json.loads(records[-1][len(b"data: "):])["type"] == "done"

    @pytest.mark.asyncio
    async def test_stream_to_sse_source_failure(self):
        async def failing():
            yield StreamingChunk.token_chunk("a")
            raise RuntimeError("boom")

        records = [record async for record in stream_to_sse(failing())]

        assert json.loads(records[-1][len(b"data: "):]) == {"type": "error", "error": "boom"}

    @pytest.mark.asyncio
    async def test_collect_stream(self):
        seen: list[str] = []
        source = _chunks(
            StreamingChunk.token_chunk("a"),
            StreamingChunk.token_chunk("b"),
            StreamingChunk.done_chunk(NormalizedResponse(content="ab", finish_reason="stop")),
        )

        response = await collect_stream(source, on_token=seen.append)

        assert response.content == "ab"
        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_collect_stream_raises_on_error(self):
        source = _chunks(StreamingChunk.token_chunk("a"), StreamingChunk.error_chunk("Stream aborted"))

        with pytest.raises(StreamError, match="Stream aborted"):
            await collect_stream(source)
