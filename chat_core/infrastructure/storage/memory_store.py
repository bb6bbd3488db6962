"""进程内 LRU 消息缓存，作为未提供外部存储时的默认实现。

进程退出后数据即丢失，持久化只是尽力而为。
"""

import threading
from collections import OrderedDict
from typing import Optional

from chat_core.domain.models import ChatMessage
from chat_core.domain.store import MessageStore

DEFAULT_MAX_SIZE = 10_000


class MemoryMessageStore(MessageStore):
    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._items: "OrderedDict[str, ChatMessage]" = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            message = self._items.get(message_id)
            if message is not None:
                self._items.move_to_end(message_id)
            return message

    async def set(self, message_id: str, message: ChatMessage) -> None:
        with self._lock:
            self._items[message_id] = message
            self._items.move_to_end(message_id)
            while len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._items
