"""Chat Core 顶层包。

该包实现托管对话服务的客户端同步引擎：
WebSocket 流式传输、流式回复累加、本地历史缓存，
以及协调会话切换与消息发送的会话控制器。
"""

from chat_core.api.service import create_session
from chat_core.providers.tokens import TokenPair
from chat_core.sync.session import ChatSession

__all__ = ["ChatSession", "TokenPair", "create_session"]
