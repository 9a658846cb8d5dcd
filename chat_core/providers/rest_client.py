"""聊天 REST API 适配器。

本模块负责：

1. 以 Bearer 令牌调用 /api/rag/chats/ 系列端点。
2. 把网络错误、鉴权失败、限流、其他服务端错误以及无法解析的响应分别包装为 RestError 子类。
3. 把服务端消息 {id, sender, content, createdAt} 转换为内部 Message。

令牌刷新不在这里处理：401 直接抛出 AuthError，由上层决定是否重新登录。
"""

from typing import Any, Dict, List, Optional

import httpx

from chat_core.config.settings import settings as default_settings
from chat_core.domain.exceptions import ApiError, AuthError, NetworkError, RateLimitError
from chat_core.domain.models import ConversationHistory, ConversationId, Message, parse_timestamp
from chat_core.providers.tokens import TokenPair


class ChatApiClient:
    """基于 httpx.AsyncClient 的 ChatApi 实现。"""

    name = "rest"

    def __init__(self, settings=default_settings, tokens: Optional[TokenPair] = None):
        # Settings 里包含 base_url、超时等配置
        self._settings = settings
        self._tokens = tokens or TokenPair()

    @property
    def tokens(self) -> TokenPair:
        return self._tokens

    async def create_chat(self, name: str, assistant_id: ConversationId) -> Dict[str, Any]:
        return await self._request("POST", "/api/rag/chats/", json={"name": name, "assistant": assistant_id})

    async def get_chat(self, chat_id: ConversationId) -> Dict[str, Any]:
        return await self._request("GET", f"/api/rag/chats/{chat_id}/")

    async def fetch_messages(self, chat_id: ConversationId) -> ConversationHistory:
        path = f"/api/rag/chats/{chat_id}/"
        data = await self.get_chat(chat_id)
        if not isinstance(data, dict):
            raise self._bad_response(path, "chat payload is not an object")
        try:
            return [self._to_message(m) for m in (data.get("messages") or [])]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._bad_response(path, f"malformed message: {e}") from e

    async def update_chat_name(self, chat_id: ConversationId, name: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/rag/chats/{chat_id}/", json={"name": name})

    async def delete_chat(self, chat_id: ConversationId) -> None:
        await self._request("DELETE", f"/api/rag/chats/{chat_id}/")

    async def list_chats(self, assistant_id: Optional[ConversationId] = None) -> List[Dict[str, Any]]:
        chats = await self._request("GET", "/api/rag/chats/") or []
        if not isinstance(chats, list):
            raise self._bad_response("/api/rag/chats/", "chat list is not an array")
        if assistant_id is None:
            return chats
        return [c for c in chats if isinstance(c, dict) and str(self._assistant_of(c)) == str(assistant_id)]

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        """发送请求并把失败映射为统一异常。"""

        headers = {"Accept": "application/json", **self._tokens.authorization_header()}
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.request(
                    method,
                    f"{self._settings.api_base_url}{path}",
                    json=json,
                    headers=headers,
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__, path=path)
        if resp.status_code == 401:
            raise AuthError(code="AUTH_ERROR", message="access token rejected", http_status=401, path=path)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="rate limited", http_status=429, path=path)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code, path=path)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            # 200 但响应体不是 JSON（例如网关返回的 HTML 页面）
            raise self._bad_response(path, f"invalid JSON body: {e}") from e

    @staticmethod
    def _bad_response(path: str, message: str) -> ApiError:
        return ApiError(code="BAD_RESPONSE", message=message, http_status=502, path=path)

    @staticmethod
    def _assistant_of(chat: Dict[str, Any]) -> Any:
        assistant = chat.get("assistant")
        if isinstance(assistant, dict):
            return assistant.get("id")
        return assistant

    @staticmethod
    def _to_message(payload: Dict[str, Any]) -> Message:
        """服务端消息 -> Message；sender 为 "user" 以外的都视为助手。"""

        role = "user" if payload.get("sender") == "user" else "assistant"
        return Message(
            id=str(payload["id"]),
            role=role,
            content=payload.get("content") or "",
            timestamp=parse_timestamp(payload.get("createdAt")),
            sealed=True,
            status="sent" if role == "user" else "complete",
        )
