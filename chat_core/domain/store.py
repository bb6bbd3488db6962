"""消息存储抽象。

会话历史不在客户端内存中整体保存，而是通过 parent_message_id
逐条到 MessageStore 中按 ID 查找。实现需要支持并发读写，
同一 key 的并发写入以最后一次为准。
"""

from typing import Awaitable, Callable, Optional, Protocol

from .models import ChatMessage


class MessageStore(Protocol):
    async def get(self, message_id: str) -> Optional[ChatMessage]:
        ...

    async def set(self, message_id: str, message: ChatMessage) -> None:
        ...


GetMessageById = Callable[[str], Awaitable[Optional[ChatMessage]]]
UpsertMessage = Callable[[ChatMessage], Awaitable[None]]
