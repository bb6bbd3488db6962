"""SSE 流分发器。

把传输层的原始字节流转换为逐条 data 回调：

- 每个 chunk 先尝试整体解析为 JSON，若是 invalid_request_error 错误信封，
  则构造 ServiceError 交给 on_error（未提供时记录日志后丢弃），不再送入分帧器；
- 其余 chunk 送入 SSEParser，每完成一个事件就以其 data 调用 on_message。

传输形态在包装时一次性确定：拉取式（异步字节迭代器）或推送式（同步 read() 直到耗尽），
两者都不支持时立即报错，而不是挂起等待。
"""

import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import httpx

from chat_core.cancellation import AbortSignal
from chat_core.domain.exceptions import (
    AbortedError,
    ApiError,
    RateLimitError,
    ServiceError,
    UnsupportedTransportError,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.streaming.sse import ParsedEvent, SSEParser

# 返回 True 表示调用方已拿到终止标记，不再继续读取
MessageCallback = Callable[[str], Optional[bool]]
ErrorCallback = Callable[[ServiceError], None]


class PullChunkSource:
    """拉取式来源：逐个 await 读取字节块，按 UTF-8 增量解码。"""

    kind = "pull"

    def __init__(self, chunks: AsyncIterator[bytes]):
        self._chunks = chunks
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def __aiter__(self):
        async for chunk in self._chunks:
            text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            if text:
                yield text
        tail = self._decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()


class PushChunkSource:
    """推送式来源：同步调用 read() 直到返回 None 或空值。"""

    kind = "push"

    def __init__(self, readable: Any):
        self._readable = readable

    async def __aiter__(self):
        while True:
            chunk = self._readable.read()
            if not chunk:
                return
            yield chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else str(chunk)

    async def aclose(self) -> None:
        close = getattr(self._readable, "close", None)
        if close is not None:
            close()


ChunkSource = Union[PullChunkSource, PushChunkSource]


def chunk_source_for(body: Any) -> ChunkSource:
    """根据响应体支持的读取方式选定来源类型。"""

    if isinstance(body, httpx.Response):
        return PullChunkSource(body.aiter_bytes())
    if hasattr(body, "__aiter__"):
        return PullChunkSource(body)
    if callable(getattr(body, "read", None)):
        return PushChunkSource(body)
    raise UnsupportedTransportError(
        code="UNSUPPORTED_TRANSPORT",
        message='unsupported "fetch" implementation: response body is neither readable nor async-iterable',
    )


def parse_error_envelope(chunk: str) -> Optional[ServiceError]:
    try:
        response = json.loads(chunk)
    except ValueError:
        return None
    if not isinstance(response, dict):
        return None
    detail = response.get("detail")
    if not isinstance(detail, dict) or detail.get("type") != "invalid_request_error":
        return None
    message = detail.get("message")
    code = detail.get("code")
    return ServiceError(
        code="INVALID_REQUEST",
        message=f"ChatGPT error {message}: {code} ({detail.get('type')})",
        http_status=code,
        status_text=message,
        body=response,
    )


async def dispatch_stream(
    source: ChunkSource,
    on_message: MessageCallback,
    on_error: Optional[ErrorCallback] = None,
    signal: Optional[AbortSignal] = None,
) -> None:
    stopped = False

    def on_event(event: ParsedEvent) -> None:
        nonlocal stopped
        if stopped or event.type != "event":
            return
        if on_message(event.data):
            stopped = True

    parser = SSEParser(on_event)
    chunks = source.__aiter__()
    try:
        async for chunk in chunks:
            if signal is not None and signal.aborted:
                raise AbortedError(code="ABORTED", message=signal.reason or "aborted")
            error = parse_error_envelope(chunk)
            if error is not None:
                if on_error is not None:
                    on_error(error)
                else:
                    logger.error(error.message, extra={"extra": {"status_code": error.status_code}})
                continue
            parser.feed(chunk)
            if stopped:
                break
    finally:
        await chunks.aclose()
        await source.aclose()


async def fetch_sse(
    client: httpx.AsyncClient,
    url: str,
    *,
    body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    on_message: MessageCallback,
    on_error: Optional[ErrorCallback] = None,
    signal: Optional[AbortSignal] = None,
    error_prefix: str = "ChatGPT error",
) -> None:
    """POST 请求并以 SSE 方式消费响应体。

    非 2xx 响应不是事件流，在任何解析之前直接抛出 ApiError。
    """

    async with client.stream(
        "POST",
        url,
        content=json.dumps(body, ensure_ascii=False).encode("utf-8"),
        headers=headers,
    ) as resp:
        if not 200 <= resp.status_code < 300:
            try:
                reason = (await resp.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                reason = resp.reason_phrase
            error_cls = RateLimitError if resp.status_code == 429 else ApiError
            raise error_cls(
                code="RATE_LIMIT" if resp.status_code == 429 else "API_ERROR",
                message=f"{error_prefix} {resp.status_code}: {reason}",
                http_status=resp.status_code,
                status_text=resp.reason_phrase,
            )
        await dispatch_stream(chunk_source_for(resp), on_message, on_error=on_error, signal=signal)

