"""REST 协作方集成层。

该包下的模块负责：
- 定义 ChatApi 抽象接口 (base)。
- 持有访问令牌对 (tokens)。
- 提供基于 httpx 的具体实现 (rest_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ChatApi
from chat_core.providers.rest_client import ChatApiClient
from chat_core.providers.tokens import TokenPair


def create_api(tokens: Optional[TokenPair] = None) -> ChatApi:
    """按当前配置创建 REST 客户端。"""

    return ChatApiClient(settings, tokens=tokens)


__all__ = ["ChatApi", "ChatApiClient", "TokenPair", "create_api"]
