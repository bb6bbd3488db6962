"""会话客户端集成层。

该包下的模块负责：
- 定义客户端抽象接口 (base)。
- 维护端点与模型默认配置 (registry)。
- 提供两种线路格式的具体实现 (openai_client、proxy_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ConversationClient
from chat_core.providers.openai_client import OpenAIChatClient
from chat_core.providers.proxy_client import ReverseProxyChatClient


def create_client(name: Optional[str] = None, **kwargs) -> ConversationClient:
    """根据名称创建客户端实例，默认取配置中的 default_provider。"""

    provider_name = (name or getattr(settings, "default_provider", "openai")).lower()
    if provider_name == "proxy":
        return ReverseProxyChatClient(settings, **kwargs)
    return OpenAIChatClient(settings, **kwargs)
