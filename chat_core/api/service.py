"""对外 API 服务模块。

提供组装好的会话对象供上层应用调用。每个会话对象自己持有令牌对、
REST 客户端、本地缓存与唯一的传输连接，不依赖模块级全局状态。
"""

from pathlib import Path
from typing import Optional

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.infrastructure.storage.json_store import JsonFileStore
from chat_core.providers.rest_client import ChatApiClient
from chat_core.providers.tokens import TokenPair
from chat_core.sync.cache import LocalMessageCache
from chat_core.sync.session import ChatSession, UpdateCallback
from chat_core.transport.connection import TransportConnection


def create_session(
    tokens: Optional[TokenPair] = None,
    settings: Optional[Settings] = None,
    cache_root: Optional[str | Path] = None,
    on_update: Optional[UpdateCallback] = None,
) -> ChatSession:
    """按配置组装一个 ChatSession。

    Args:
        tokens: 访问令牌对（可选，不提供则以匿名身份调用 REST）
        settings: 配置（可选，默认使用全局配置）
        cache_root: 本地缓存目录（可选，默认 settings.cache_root）
        on_update: 历史变化回调（可选，视图层用于重新渲染）

    Returns:
        尚未打开任何会话的 ChatSession
    """
    cfg = settings or default_settings
    api = ChatApiClient(cfg, tokens=tokens or TokenPair())
    cache = LocalMessageCache(JsonFileStore(root=cache_root or cfg.cache_root))
    transport = TransportConnection(
        ws_base_url=cfg.ws_base_url,
        handshake_timeout=cfg.handshake_timeout,
        retry_initial_delay=cfg.retry_initial_delay,
        retry_max_delay=cfg.retry_max_delay,
    )
    return ChatSession(api=api, cache=cache, transport=transport, settings=cfg, on_update=on_update)
