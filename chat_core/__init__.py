"""chat_core 顶层包。

对话补全服务的客户端库：沿 parent_message_id 重建多轮上下文并按 token
预算裁剪，支持非流式与 SSE 流式两种接口，统一通过 send_message 调用。
"""

from chat_core.cancellation import AbortSignal
from chat_core.domain.models import ChatMessage, SendMessageBrowserOptions, SendMessageOptions
from chat_core.providers import OpenAIChatClient, ReverseProxyChatClient, create_client

__all__ = [
    "AbortSignal",
    "ChatMessage",
    "OpenAIChatClient",
    "ReverseProxyChatClient",
    "SendMessageBrowserOptions",
    "SendMessageOptions",
    "create_client",
]
