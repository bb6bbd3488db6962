import json

import httpx
import pytest

from chat_core.cancellation import AbortSignal
from chat_core.domain.exceptions import AbortedError, ApiError, RateLimitError, UnsupportedTransportError
from chat_core.streaming.dispatcher import (
    PullChunkSource,
    PushChunkSource,
    chunk_source_for,
    dispatch_stream,
    fetch_sse,
)

ERROR_ENVELOPE = {"detail": {"type": "invalid_request_error", "message": "bad", "code": 400}}


class TrackingChunks:
    """异步字节迭代器，记录是否被关闭。"""

    def __init__(self, chunks, fail_after=None):
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self.closed = False
        self.reads = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._fail_after is not None and self.reads >= self._fail_after:
            raise RuntimeError("boom")
        if not self._chunks:
            raise StopAsyncIteration
        self.reads += 1
        return self._chunks.pop(0)

    async def aclose(self):
        self.closed = True


class Readable:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False

    def read(self):
        return self._chunks.pop(0) if self._chunks else None

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_pull_source_yields_each_event():
    chunks = TrackingChunks([b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n', b"data: [DONE]\n\n"])
    received = []
    await dispatch_stream(PullChunkSource(chunks), received.append)
    assert received == ['{"choices":[{"delta":{"content":"Hi"}}]}', "[DONE]"]
    assert chunks.closed


@pytest.mark.asyncio
async def test_pull_source_decodes_multibyte_split_across_chunks():
    raw = "data: 你好\n\n".encode("utf-8")
    chunks = TrackingChunks([raw[:7], raw[7:]])
    received = []
    await dispatch_stream(PullChunkSource(chunks), received.append)
    assert received == ["你好"]


@pytest.mark.asyncio
async def test_push_source_reads_until_exhausted():
    readable = Readable([b"data: a\n\n", "data: b\n\n"])
    source = chunk_source_for(readable)
    assert isinstance(source, PushChunkSource)
    received = []
    await dispatch_stream(source, received.append)
    assert received == ["a", "b"]
    assert readable.closed


def test_unsupported_body_fails_fast():
    with pytest.raises(UnsupportedTransportError):
        chunk_source_for(object())


@pytest.mark.asyncio
async def test_error_envelope_goes_to_on_error_only():
    chunks = TrackingChunks([json.dumps(ERROR_ENVELOPE).encode()])
    received, errors = [], []
    await dispatch_stream(PullChunkSource(chunks), received.append, on_error=errors.append)
    assert received == []
    assert len(errors) == 1
    assert errors[0].status_code == 400
    assert errors[0].status_text == "bad"


@pytest.mark.asyncio
async def test_error_envelope_without_callback_is_swallowed():
    chunks = TrackingChunks([json.dumps(ERROR_ENVELOPE).encode(), b"data: after\n\n"])
    received = []
    await dispatch_stream(PullChunkSource(chunks), received.append)
    assert received == ["after"]


@pytest.mark.asyncio
async def test_stops_reading_when_callback_returns_true():
    chunks = TrackingChunks([b"data: [DONE]\n\n", b"data: late\n\n"])
    received = []

    def on_message(data):
        received.append(data)
        return data == "[DONE]"

    await dispatch_stream(PullChunkSource(chunks), on_message)
    assert received == ["[DONE]"]
    assert chunks.reads == 1
    assert chunks.closed


@pytest.mark.asyncio
async def test_source_released_on_error():
    chunks = TrackingChunks([b"data: a\n\n", b"data: b\n\n"], fail_after=1)
    with pytest.raises(RuntimeError):
        await dispatch_stream(PullChunkSource(chunks), lambda data: None)
    assert chunks.closed


@pytest.mark.asyncio
async def test_aborted_signal_stops_loop():
    signal = AbortSignal()
    signal.abort("user cancelled")
    chunks = TrackingChunks([b"data: a\n\n"])
    with pytest.raises(AbortedError):
        await dispatch_stream(PullChunkSource(chunks), lambda data: None, signal=signal)
    assert chunks.closed


@pytest.mark.asyncio
async def test_fetch_sse_rejects_non_2xx_before_parsing():
    def handler(request):
        return httpx.Response(503, content=b"upstream down")

    received = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ApiError) as exc_info:
            await fetch_sse(client, "https://example.test/sse", body={}, on_message=received.append)
    assert exc_info.value.status_code == 503
    assert exc_info.value.status_text == "Service Unavailable"
    assert "upstream down" in exc_info.value.message
    assert received == []


@pytest.mark.asyncio
async def test_fetch_sse_maps_429_to_rate_limit():
    def handler(request):
        return httpx.Response(429, content=b"slow down")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(RateLimitError):
            await fetch_sse(client, "https://example.test/sse", body={}, on_message=lambda d: None)


@pytest.mark.asyncio
async def test_fetch_sse_posts_json_body():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["method"] = request.method
        return httpx.Response(200, content=b"data: ok\n\n")

    received = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await fetch_sse(client, "https://example.test/sse", body={"stream": True}, on_message=received.append)
    assert captured == {"body": {"stream": True}, "method": "POST"}
    assert received == ["ok"]
