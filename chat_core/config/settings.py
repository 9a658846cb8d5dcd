"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict

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
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 服务端地址 ----
    api_base_url: str = Field(
        default="https://api.hackathon-eldik.makalabox.com",
        description="REST API 基础URL",
    )
    ws_base_url: str = Field(
        default="wss://api.hackathon-eldik.makalabox.com",
        description="WebSocket 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 连接策略 ----
    handshake_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60.0,
        description="发送前等待握手的上限（秒）",
    )
    retry_initial_delay: float = Field(default=0.1, gt=0, description="重连初始退避（秒）")
    retry_max_delay: float = Field(default=1.0, gt=0, description="重连最大退避（秒）")

    # ---- 本地缓存与日志 ----
    cache_root: str = Field(default=".storage/cache", description="本地消息缓存目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话 ----
    default_chat_name: str = Field(default="New chat", description="新建会话的临时名称")
    chat_title_max_length: int = Field(
        default=50,
        ge=1,
        le=200,
        description="首条消息生成会话标题时的最大长度",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("ws_base_url")
    @classmethod
    def validate_ws_base_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("ws_base_url must start with ws:// or wss://")
        return v.rstrip("/")

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


settings = ChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ChatSettings
