"""chat/completions 直连客户端。

本模块负责：

1. 通过 ContextBuilder 沿 parent_message_id 组装历史上下文并收紧 max_tokens。
2. 构造 chat/completions 请求（流式或非流式）并处理网络/API 异常。
3. 流式时逐个累加 delta 并回调 on_progress；非流式时一次性解析 choices。
4. 响应没有 usage 时（流式总是如此）本地估算 completion token 数。
5. 按“问题、回答”的顺序写入 MessageStore。
"""

import contextlib
import json
import logging
from datetime import date
from typing import Any, AsyncIterator, Dict, Optional
from uuid import uuid4

import httpx

from chat_core.cancellation import AbortSignal, run_with_timeout
from chat_core.config.settings import settings
from chat_core.context import ContextBuilder
from chat_core.domain.exceptions import (
    ApiError,
    NetworkError,
    ProtocolError,
    RateLimitError,
    ServiceError,
    ValidationError,
)
from chat_core.domain.models import (
    ChatMessage,
    ChatUsage,
    ProgressCallback,
    PromptAssembly,
    SendMessageOptions,
)
from chat_core.domain.store import GetMessageById, MessageStore, UpsertMessage
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.memory_store import DEFAULT_MAX_SIZE, MemoryMessageStore
from chat_core.providers.registry import OPENAI_CONFIG
from chat_core.streaming.dispatcher import fetch_sse
from chat_core.tokenizer import TokenEstimator


def default_system_message(today: Optional[date] = None) -> str:
    current_date = (today or date.today()).isoformat()
    return (
        "You are ChatGPT, a large language model trained by OpenAI. Answer as concisely as possible.\n"
        "Knowledge cutoff: 2021-09-01\n"
        f"Current date: {current_date}"
    )


class OpenAIChatClient:
    """直连 API 的会话客户端。

    - name: 客户端名称（供日志使用）。
    - send_message: 对外统一调用入口，返回助手回复 ChatMessage。
    """

    name = "openai"

    def __init__(
        self,
        cfg=settings,
        *,
        api_key: Optional[str] = None,
        api_org: Optional[str] = None,
        api_base_url: Optional[str] = None,
        completion_params: Optional[Dict[str, Any]] = None,
        system_message: Optional[str] = None,
        max_model_tokens: Optional[int] = None,
        max_response_tokens: Optional[int] = None,
        message_store: Optional[MessageStore] = None,
        get_message_by_id: Optional[GetMessageById] = None,
        upsert_message: Optional[UpsertMessage] = None,
        token_estimator: Optional[TokenEstimator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        debug: Optional[bool] = None,
    ):
        # Settings 提供默认值，构造参数优先
        self._settings = cfg
        self._api_key = api_key or getattr(cfg, "openai_api_key", None)
        self._api_org = api_org or getattr(cfg, "openai_api_org", None)
        if not self._api_key:
            raise ValidationError(code="MISSING_API_KEY", message="OpenAI missing required api_key")
        self._api_base_url = (
            api_base_url or getattr(cfg, "openai_base_url", None) or OPENAI_CONFIG.base_url
        ).rstrip("/")

        model_cfg = OPENAI_CONFIG.models[OPENAI_CONFIG.default_model]
        self._completion_params = {**model_cfg.completion_params(), **(completion_params or {})}
        self._system_message = default_system_message() if system_message is None else system_message
        self._max_model_tokens = (
            max_model_tokens or getattr(cfg, "max_model_tokens", None) or model_cfg.max_model_tokens
        )
        self._max_response_tokens = (
            max_response_tokens or getattr(cfg, "max_response_tokens", None) or model_cfg.max_response_tokens
        )

        self._message_store = (
            message_store
            if message_store is not None
            else MemoryMessageStore(getattr(cfg, "message_store_max_size", DEFAULT_MAX_SIZE))
        )
        self._get_message_by_id = get_message_by_id or self._default_get_message_by_id
        self._upsert_message = upsert_message or self._default_upsert_message
        self._estimator = token_estimator or TokenEstimator()
        self._context = ContextBuilder(self._estimator, self._get_message_by_id)
        self._http_client = http_client
        self._debug = getattr(cfg, "debug", False) if debug is None else debug

    @property
    def api_key(self) -> str:
        return self._api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._api_key = value

    @property
    def api_org(self) -> Optional[str]:
        return self._api_org

    @api_org.setter
    def api_org(self, value: Optional[str]) -> None:
        self._api_org = value

    async def send_message(self, text: str, opts: Optional[SendMessageOptions] = None) -> ChatMessage:
        """发送一轮用户输入并等待回复。

        需要历史上下文时必须提供有效的 opts.parent_message_id；
        提供 on_progress 时默认走流式接口，每个增量回调一次。

        Raises:
            ApiError / RateLimitError: 非 2xx 响应。
            NetworkError: 传输层异常。
            ProtocolError: 响应结构异常或流未以 [DONE] 结束。
            ServiceError: 服务端错误信封。
            ChatTimeoutError / AbortedError: 超时或调用方取消。
        """

        opts = opts or SendMessageOptions()
        stream = opts.should_stream
        message_id = opts.message_id or str(uuid4())
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "client": self.name}

        question = ChatMessage(
            id=message_id,
            role="user",
            text=text,
            conversation_id=opts.conversation_id,
            parent_message_id=opts.parent_message_id,
            name=opts.name,
        )

        system_message = self._system_message if opts.system_message is None else opts.system_message
        assembly = await self._context.build(
            text,
            parent_message_id=opts.parent_message_id,
            system_message=system_message,
            max_model_tokens=self._max_model_tokens,
            max_response_tokens=self._max_response_tokens,
            name=opts.name,
        )

        result = ChatMessage(
            id=str(uuid4()),
            role="assistant",
            text="",
            conversation_id=opts.conversation_id,
            parent_message_id=message_id,
        )

        body = self._build_body(assembly, opts, stream)
        if self._debug:
            log_event(logging.INFO, f"sendMessage ({assembly.token_count} tokens)", log_ctx, body=body)
        log_event(
            logging.INFO,
            "Calling provider",
            log_ctx,
            stream=stream,
            message_count=len(assembly.messages),
            prompt_tokens=assembly.token_count,
            max_tokens=assembly.max_response_tokens,
        )

        if stream:
            request = self._stream_completion(body, result, opts.on_progress, opts.abort_signal)
        else:
            request = self._complete(body, result, log_ctx)
        timeout_ms = opts.timeout_ms or getattr(self._settings, "timeout_ms", None)
        await run_with_timeout(
            request,
            timeout_ms=timeout_ms,
            signal=opts.abort_signal,
            timeout_message="OpenAI timed out waiting for response",
        )

        if result.usage is None:
            completion_tokens = self._estimator.estimate(result.text)
            result.usage = ChatUsage(
                prompt_tokens=assembly.token_count,
                completion_tokens=completion_tokens,
                total_tokens=assembly.token_count + completion_tokens,
                estimated=True,
            )
        log_event(
            logging.INFO,
            "Token usage",
            log_ctx,
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            total_tokens=result.usage.total_tokens,
            estimated=result.usage.estimated,
        )

        await self._persist(question, log_ctx)
        await self._persist(result, log_ctx)
        return result

    # ---- 请求 ----

    async def _complete(self, body: Dict[str, Any], result: ChatMessage, log_ctx: Dict[str, Any]) -> None:
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._url,
                    content=json.dumps(body, ensure_ascii=False).encode("utf-8"),
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接中断等
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if resp.status_code == 429:
            raise RateLimitError(
                code="RATE_LIMIT",
                message=f"OpenAI error 429: {resp.text}",
                http_status=429,
                status_text=resp.reason_phrase,
            )
        if not 200 <= resp.status_code < 300:
            raise ApiError(
                code="API_ERROR",
                message=f"OpenAI error {resp.status_code}: {resp.text}",
                http_status=resp.status_code,
                status_text=resp.reason_phrase,
            )
        try:
            response = resp.json()
        except ValueError as e:
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI error: invalid JSON body ({e})") from e
        if not isinstance(response, dict):
            response = {}
        if self._debug:
            log_event(logging.INFO, "OpenAI response", log_ctx, response=response)

        if response.get("id"):
            result.id = response["id"]
        choices = response.get("choices") or []
        if not isinstance(choices, list):
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI error: unexpected choices {choices!r}")
        if not choices:
            detail = response.get("detail")
            reason = (detail.get("message") if isinstance(detail, dict) else None) or detail or "unknown"
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI error: {reason}", body=response)

        choice = choices[0]
        if not isinstance(choice, dict):
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI error: unexpected choice {choice!r}")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI error: unexpected message {message!r}")
        result.text = message.get("content") or ""
        if message.get("role"):
            result.role = message["role"]
        result.detail = response
        usage_raw = response.get("usage")
        if usage_raw:
            result.usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )

    async def _stream_completion(
        self,
        body: Dict[str, Any],
        result: ChatMessage,
        on_progress: Optional[ProgressCallback],
        signal: Optional[AbortSignal],
    ) -> None:
        done = False

        def on_message(data: str) -> bool:
            nonlocal done
            if data == "[DONE]":
                result.text = result.text.strip()
                done = True
                return True
            try:
                response = json.loads(data)
            except ValueError as e:
                raise ProtocolError(
                    code="INVALID_STREAM_EVENT",
                    message=f"OpenAI stream SSE event unexpected error: {e}",
                ) from e
            if not isinstance(response, dict):
                raise ProtocolError(code="INVALID_STREAM_EVENT", message=f"OpenAI stream SSE event: {data!r}")

            if response.get("id"):
                result.id = response["id"]
            choices = response.get("choices") or []
            if not isinstance(choices, list):
                raise ProtocolError(code="INVALID_STREAM_EVENT", message=f"OpenAI stream SSE event: {data!r}")
            if choices:
                choice = choices[0]
                delta = (choice.get("delta") or {}) if isinstance(choice, dict) else None
                if not isinstance(delta, dict):
                    raise ProtocolError(
                        code="INVALID_STREAM_EVENT",
                        message=f"OpenAI stream SSE event: unexpected choice {choice!r}",
                    )
                content = delta.get("content")
                result.delta = content
                if content:
                    result.text += content
                if delta.get("role"):
                    result.role = delta["role"]
                result.detail = response
                if on_progress is not None:
                    on_progress(result)
            return False

        def on_error(error: ServiceError) -> None:
            raise error

        try:
            async with self._client() as client:
                await fetch_sse(
                    client,
                    self._url,
                    body=body,
                    headers=self._headers(),
                    on_message=on_message,
                    on_error=on_error,
                    signal=signal,
                    error_prefix="OpenAI error",
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if not done:
            raise ProtocolError(code="STREAM_INCOMPLETE", message="OpenAI stream ended before [DONE]")

    # ---- 辅助方法 ----

    @property
    def _url(self) -> str:
        return f"{self._api_base_url}{OPENAI_CONFIG.path}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        if self._api_org:
            headers["OpenAI-Organization"] = self._api_org
        return headers

    def _build_body(self, assembly: PromptAssembly, opts: SendMessageOptions, stream: bool) -> Dict[str, Any]:
        return {
            "max_tokens": assembly.max_response_tokens,
            **self._completion_params,
            **opts.completion_params,
            "messages": [m.to_payload() for m in assembly.messages],
            "stream": stream,
        }

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        timeout = getattr(self._settings, "http_timeout", 60.0)
        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            yield client

    async def _persist(self, message: ChatMessage, log_ctx: Dict[str, Any]) -> None:
        # 历史写入失败不影响本次已成功的回复
        try:
            await self._upsert_message(message)
        except Exception as e:
            log_event(logging.WARNING, "Failed to persist message", log_ctx, message_id=message.id, error=str(e))

    async def _default_get_message_by_id(self, message_id: str) -> Optional[ChatMessage]:
        return await self._message_store.get(message_id)

    async def _default_upsert_message(self, message: ChatMessage) -> None:
        await self._message_store.set(message.id, message)
