"""会话客户端抽象接口。

调用方不直接依赖某一种线路格式，而是依赖此协议：

- OpenAIChatClient: 直连 chat/completions 端点，本地组装历史上下文。
- ReverseProxyChatClient: 通过反向代理使用网页会话，历史由服务端维护。

两种实现共享上下文/流式处理组件，但不存在继承关系。
"""

from typing import Optional, Protocol, Union

from chat_core.domain.models import ChatMessage, SendMessageBrowserOptions, SendMessageOptions


class ConversationClient(Protocol):
    """会话客户端协议。

    实现者需要提供：
    - name: 客户端名称，用于日志。
    - send_message(text, opts): 发送一轮用户输入，返回助手回复。
    """

    name: str

    async def send_message(
        self,
        text: str,
        opts: Optional[Union[SendMessageOptions, SendMessageBrowserOptions]] = None,
    ) -> ChatMessage:
        ...
