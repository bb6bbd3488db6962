"""反向代理（网页会话）客户端。

历史上下文由服务端按 conversation_id / parent_message_id 维护，
客户端只发送最新一轮输入。流式帧中的 parts[0] 是截至当前的完整文本，
而不是增量。

服务端有时会在发完最后一帧后直接断开连接；若此时已经收到文本，
视为成功返回已累积的结果。这一判断依赖错误类型/错误文本匹配，
仅为兼容保留。
"""

import contextlib
import json
import logging
import mimetypes
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

import httpx

from chat_core.cancellation import AbortSignal, run_with_timeout
from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    NetworkError,
    ProtocolError,
    ServiceError,
    ValidationError,
)
from chat_core.domain.models import (
    ChatMessage,
    FileAttachment,
    ProgressCallback,
    SendMessageBrowserOptions,
)
from chat_core.domain.store import MessageStore
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.memory_store import DEFAULT_MAX_SIZE, MemoryMessageStore
from chat_core.providers.registry import MULTIMODAL_MODEL, PROXY_CONFIG
from chat_core.streaming.dispatcher import fetch_sse
from chat_core.utils import is_valid_uuid_v4

_TERMINATED_MESSAGES = {"terminated", "typeerror: terminated", "error: typeerror: terminated"}


def is_terminated_error(exc: BaseException) -> bool:
    """连接被对端提前关闭。"""

    if isinstance(exc, httpx.RemoteProtocolError):
        return True
    return str(exc).strip().lower() in _TERMINATED_MESSAGES


class ReverseProxyChatClient:
    """反向代理客户端实现。"""

    name = "proxy"

    def __init__(
        self,
        cfg=settings,
        *,
        access_token: Optional[str] = None,
        api_reverse_proxy_url: Optional[str] = None,
        model: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        message_store: Optional[MessageStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        debug: Optional[bool] = None,
    ):
        self._settings = cfg
        self._access_token = access_token or getattr(cfg, "chatgpt_access_token", None)
        if not self._access_token:
            raise ValidationError(code="MISSING_ACCESS_TOKEN", message="ChatGPT invalid access_token")
        self._api_reverse_proxy_url = (
            api_reverse_proxy_url or getattr(cfg, "reverse_proxy_url", None) or PROXY_CONFIG.base_url
        ).rstrip("/")
        self._model = model or getattr(cfg, "proxy_model", None) or PROXY_CONFIG.default_model
        self._headers = dict(headers or {})
        self._message_store = (
            message_store
            if message_store is not None
            else MemoryMessageStore(getattr(cfg, "message_store_max_size", DEFAULT_MAX_SIZE))
        )
        self._http_client = http_client
        self._debug = getattr(cfg, "debug", False) if debug is None else debug

    @property
    def access_token(self) -> str:
        return self._access_token

    @access_token.setter
    def access_token(self, value: str) -> None:
        self._access_token = value

    async def send_message(
        self,
        text: str,
        opts: Optional[SendMessageBrowserOptions] = None,
        files: Optional[List[FileAttachment]] = None,
    ) -> ChatMessage:
        """发送一轮用户输入并等待回复。

        conversation_id 与 parent_message_id 必须同时提供或同时省略，
        且所有 ID 都必须是合法的 v4 UUID；校验在任何网络请求之前完成。
        files 为已上传附件的元数据，仅 gpt-4 模型可用。
        """

        opts = opts or SendMessageBrowserOptions()
        self._validate_ids(opts)
        model = opts.model or self._model
        if files:
            self._prepare_files(files, model)

        parent_message_id = opts.parent_message_id or str(uuid4())
        message_id = opts.message_id or str(uuid4())
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "client": self.name}

        question = ChatMessage(
            id=message_id,
            role="user",
            text=text,
            conversation_id=opts.conversation_id,
            parent_message_id=parent_message_id,
        )
        body = self._build_body(text, opts, model, message_id, parent_message_id, files)
        result = ChatMessage(
            id=str(uuid4()),
            role="assistant",
            text="",
            conversation_id=opts.conversation_id,
            parent_message_id=message_id,
        )

        headers = {
            **self._headers,
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "text/event-stream",
            "Content-Type": "application/json",
        }
        if self._debug:
            log_event(logging.INFO, f"POST {self._url}", log_ctx, body=body)

        timeout_ms = opts.timeout_ms or getattr(self._settings, "timeout_ms", None)
        await run_with_timeout(
            self._stream_conversation(body, headers, result, opts.on_progress, opts.abort_signal, log_ctx),
            timeout_ms=timeout_ms,
            signal=opts.abort_signal,
            timeout_message="ChatGPT timed out waiting for response",
        )

        await self._persist(question, log_ctx)
        await self._persist(result, log_ctx)
        return result

    async def gen_title(self, conversation_id: str, message_id: str) -> str:
        """请求服务端为会话生成标题。"""

        if not conversation_id:
            raise ValidationError(code="MISSING_CONVERSATION_ID", message="conversation_id can not be null")
        if not message_id:
            raise ValidationError(code="MISSING_MESSAGE_ID", message="message_id can not be null")
        url = f"{self._api_reverse_proxy_url}{PROXY_CONFIG.path}/gen_title/{conversation_id}"
        headers = {
            **self._headers,
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with self._client() as client:
                resp = await client.post(url, json={"message_id": message_id}, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if resp.status_code >= 300:
            raise ApiError(
                code="API_ERROR",
                message=f"statusCode:{resp.status_code}",
                http_status=resp.status_code,
                status_text=resp.reason_phrase,
            )
        try:
            data = resp.json()
        except ValueError:
            data = None
        title = data.get("title") if isinstance(data, dict) else None
        if not title:
            raise ProtocolError(code="GEN_TITLE_FAILED", message=f"genTitle failed: {data}")
        return title

    # ---- 请求 ----

    async def _stream_conversation(
        self,
        body: Dict[str, Any],
        headers: Dict[str, str],
        result: ChatMessage,
        on_progress: Optional[ProgressCallback],
        signal: Optional[AbortSignal],
        log_ctx: Dict[str, Any],
    ) -> None:
        done = False

        def on_message(data: str) -> bool:
            nonlocal done
            if data == "[DONE]":
                done = True
                return True
            try:
                event = json.loads(data)
            except ValueError as e:
                log_event(logging.DEBUG, "chatgpt unexpected JSON error", log_ctx, error=str(e))
                return False
            if not isinstance(event, dict):
                log_event(logging.DEBUG, "chatgpt unexpected frame", log_ctx, frame=data)
                return False
            if event.get("conversation_id"):
                result.conversation_id = event["conversation_id"]
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                log_event(logging.DEBUG, "chatgpt unexpected frame", log_ctx, frame=data)
                return False
            if message.get("id"):
                result.id = message["id"]
            text = parts[0] if parts else None
            if text and isinstance(text, str):
                result.text = text
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
                    headers=headers,
                    on_message=on_message,
                    on_error=on_error,
                    signal=signal,
                )
        except httpx.RequestError as e:
            if result.text and is_terminated_error(e):
                log_event(logging.WARNING, "Connection terminated after content, returning partial result", log_ctx)
                return
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if not done:
            raise ProtocolError(code="STREAM_INCOMPLETE", message="ChatGPT stream ended before [DONE]")

    # ---- 辅助方法 ----

    @property
    def _url(self) -> str:
        return f"{self._api_reverse_proxy_url}{PROXY_CONFIG.path}"

    @staticmethod
    def _validate_ids(opts: SendMessageBrowserOptions) -> None:
        if bool(opts.conversation_id) != bool(opts.parent_message_id):
            raise ValidationError(
                code="INVALID_ARGUMENT",
                message="conversation_id and parent_message_id must both be set or both be undefined",
            )
        for field_name in ("conversation_id", "parent_message_id", "message_id"):
            value = getattr(opts, field_name)
            if value and not is_valid_uuid_v4(value):
                raise ValidationError(code="INVALID_ARGUMENT", message=f"{field_name} is not a valid v4 UUID")

    @staticmethod
    def _prepare_files(files: List[FileAttachment], model: str) -> None:
        if model != MULTIMODAL_MODEL:
            raise ValidationError(code="FILES_NOT_SUPPORTED", message=f"only {MULTIMODAL_MODEL} model support files")
        for file in files:
            if file.file_id is None or file.filename is None:
                raise ValidationError(code="INVALID_ARGUMENT", message="required file params is null")
            if file.mime_type is None:
                file.mime_type = mimetypes.guess_type(file.filename)[0]

    @staticmethod
    def _build_body(
        text: str,
        opts: SendMessageBrowserOptions,
        model: str,
        message_id: str,
        parent_message_id: str,
        files: Optional[List[FileAttachment]],
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {"id": message_id, "author": {"role": "user"}}
        if files:
            parts: List[Any] = []
            attachments = []
            for file in files:
                part: Dict[str, Any] = {"asset_pointer": f"file-service://{file.file_id}"}
                attachment: Dict[str, Any] = {"name": file.filename, "id": file.file_id, "size": file.file_size}
                if file.file_size:
                    part["size_bytes"] = file.file_size
                if file.mime_type:
                    attachment["mimeType"] = file.mime_type
                if file.width:
                    part["width"] = attachment["width"] = file.width
                if file.height:
                    part["height"] = attachment["height"] = file.height
                parts.append(part)
                attachments.append(attachment)
            parts.append(text)
            message["content"] = {"content_type": "multimodal_text", "parts": parts}
            message["metadata"] = {"attachments": attachments}
        else:
            message["content"] = {"content_type": "text", "parts": [text]}

        body: Dict[str, Any] = {
            "action": opts.action,
            "messages": [message],
            "model": model,
            "parent_message_id": parent_message_id,
        }
        if opts.conversation_id:
            body["conversation_id"] = opts.conversation_id
        return body

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        timeout = getattr(self._settings, "http_timeout", 60.0)
        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            yield client

    async def _persist(self, message: ChatMessage, log_ctx: Dict[str, Any]) -> None:
        try:
            await self._message_store.set(message.id, message)
        except Exception as e:
            log_event(logging.WARNING, "Failed to persist message", log_ctx, message_id=message.id, error=str(e))
