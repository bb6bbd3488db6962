"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Client 选择 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的客户端类型：openai（直连 API）或 proxy（反向代理）",
    )

    # 直连 API
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_api_org: Optional[str] = Field(default=None, description="OpenAI 组织 ID（可选）")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="chat/completions 端点的基础 URL",
    )

    # 反向代理（浏览器会话）
    chatgpt_access_token: Optional[str] = Field(default=None, description="网页会话 access token")
    reverse_proxy_url: str = Field(
        default="https://bypass.duti.tech",
        description="反向代理基础 URL",
    )
    proxy_model: str = Field(default="text-davinci-002-render-sha", description="反向代理默认模型")

    # ---- 预算与超时 ----
    max_model_tokens: int = Field(default=4000, ge=1, description="模型上下文窗口上限")
    max_response_tokens: int = Field(default=1000, ge=1, description="单次回复 token 上限")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 读写超时时间（秒）")
    timeout_ms: Optional[int] = Field(
        default=None,
        ge=1,
        description="sendMessage 整体超时（毫秒），为空表示不限时",
    )

    # ---- 存储与日志 ----
    message_store_max_size: int = Field(default=10_000, ge=1, description="内存消息缓存条数上限")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    debug: bool = Field(default=False, description="是否输出请求体等调试日志")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "chatgpt_access_token")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
