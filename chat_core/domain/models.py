"""统一的对话数据模型。

本模块定义了两个客户端共享的标准数据结构：

- ChatMessage: 一轮对话（system/user/assistant），通过 parent_message_id
  向前链接，构成隐式的会话线程。
- PromptMessage / PromptAssembly: 一次请求的上下文组装结果，用完即弃。
- ChatUsage: token 统计；流式响应没有 usage，需要本地估算。
- SendMessageOptions / SendMessageBrowserOptions: sendMessage 的调用参数。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from chat_core.cancellation import AbortSignal


Role = Literal["system", "user", "assistant"]


@dataclass
class ChatUsage:
    """token 使用统计。estimated=True 表示由本地估算得出。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated: bool = False


@dataclass
class ChatMessage:
    """一轮对话消息。

    - id: 消息 UUID，持久化后不再变化。
    - role: 消息角色。
    - text: 纯文本内容。
    - conversation_id: 会话分组标签，可由调用方或服务端指定。
    - parent_message_id: 上一轮消息的 ID，只向前引用，不持有对方。
    - name: 可选的发言人名称。
    - delta: 流式响应中最近一次的增量文本。
    - detail: 服务端原始响应（最后一个 chunk 或完整 JSON），用于调试。
    - usage: token 统计。
    """

    id: str
    role: Role
    text: str
    conversation_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    name: Optional[str] = None
    delta: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    usage: Optional[ChatUsage] = None


@dataclass
class PromptMessage:
    """发送给 chat/completions 的单条消息。"""

    role: Role
    content: str
    name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass
class PromptAssembly:
    """上下文组装结果：有序消息、估算 token 数、本次回复 token 上限。"""

    messages: List[PromptMessage]
    token_count: int
    max_response_tokens: int


ProgressCallback = Callable[[ChatMessage], None]


@dataclass
class SendMessageOptions:
    """直连客户端 send_message 的参数。

    stream 为 None 时，只要提供了 on_progress 就走流式接口。
    """

    parent_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    name: Optional[str] = None
    system_message: Optional[str] = None
    timeout_ms: Optional[int] = None
    on_progress: Optional[ProgressCallback] = None
    abort_signal: Optional["AbortSignal"] = None
    stream: Optional[bool] = None
    completion_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def should_stream(self) -> bool:
        if self.stream is None:
            return self.on_progress is not None
        return self.stream


@dataclass
class FileAttachment:
    """已上传到服务端的附件元数据（上传本身不在本库范围内）。"""

    file_id: Optional[str]
    filename: Optional[str]
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: Optional[str] = None


@dataclass
class SendMessageBrowserOptions:
    """反向代理客户端 send_message 的参数。"""

    conversation_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    message_id: Optional[str] = None
    action: str = "next"
    model: Optional[str] = None
    timeout_ms: Optional[int] = None
    on_progress: Optional[ProgressCallback] = None
    abort_signal: Optional["AbortSignal"] = None
