"""客户端端点与模型默认配置。

将两种线路格式各自的基础 URL、路径与默认模型参数集中在这里，
客户端只从这里读取默认值，settings 中的配置优先。"""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class ModelConfig:
    """单个模型的默认配置。"""

    provider_model: str
    max_model_tokens: int
    max_response_tokens: int
    default_temperature: float
    default_top_p: float = 1.0
    default_presence_penalty: float = 1.0

    def completion_params(self) -> Dict[str, Any]:
        return {
            "model": self.provider_model,
            "temperature": self.default_temperature,
            "top_p": self.default_top_p,
            "presence_penalty": self.default_presence_penalty,
        }


@dataclass
class ProviderConfig:
    """某种客户端的整体配置。"""

    name: str
    base_url: str
    path: str
    default_model: str
    models: Dict[str, ModelConfig] = field(default_factory=dict)


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    path="/chat/completions",
    default_model="gpt-3.5-turbo",
    models={
        "gpt-3.5-turbo": ModelConfig(
            provider_model="gpt-3.5-turbo",
            max_model_tokens=4000,
            max_response_tokens=1000,
            default_temperature=0.8,
        ),
    },
)

PROXY_CONFIG = ProviderConfig(
    name="proxy",
    base_url="https://bypass.duti.tech",
    path="/backend-api/conversation",
    default_model="text-davinci-002-render-sha",
)

# 仅该模型接受多模态附件
MULTIMODAL_MODEL = "gpt-4"

