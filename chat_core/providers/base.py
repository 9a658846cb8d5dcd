"""REST 协作方抽象接口。

会话控制器不直接依赖 HTTP 客户端，而是依赖此协议：

- 生产环境使用 ChatApiClient（httpx）。
- 测试里可以用任意实现了这些协程方法的假对象替换。

这里只覆盖同步引擎需要的会话（chat）操作，助手的增删改查不在此处。
"""

from typing import Any, Dict, List, Optional, Protocol

from chat_core.domain.models import ConversationHistory, ConversationId


class ChatApi(Protocol):
    """聊天 REST API 协议。

    所有方法失败时抛出 RestError 的子类（NetworkError / AuthError / ApiError）。
    """

    async def create_chat(self, name: str, assistant_id: ConversationId) -> Dict[str, Any]:
        ...

    async def get_chat(self, chat_id: ConversationId) -> Dict[str, Any]:
        ...

    async def fetch_messages(self, chat_id: ConversationId) -> ConversationHistory:
        """拉取会话并把服务端消息转换为内部 Message。"""

        ...

    async def update_chat_name(self, chat_id: ConversationId, name: str) -> Dict[str, Any]:
        ...

    async def delete_chat(self, chat_id: ConversationId) -> None:
        ...

    async def list_chats(self, assistant_id: Optional[ConversationId] = None) -> List[Dict[str, Any]]:
        ...
