"""WebSocket 线协议编解码。

服务端 -> 客户端的帧都是原始文本，靠内容区分：

1. 以 "{" 开头、能解析为 JSON 对象且 message == "Connected" 的帧是握手确认。
2. 恰好等于 "[COMPLETE]" 的帧结束当前助手回合（socket 本身保持打开）。
3. 其余帧都是助手回复的文本片段，原样追加，不做任何重新编码。

客户端 -> 服务端每个用户回合发送一个 {"text": ...} JSON 对象。
"""

import json
from typing import Optional, Union

from chat_core.domain.models import ConversationId, TransportEvent


HANDSHAKE_FIELD = "message"
HANDSHAKE_MESSAGE = "Connected"
COMPLETE_SENTINEL = "[COMPLETE]"


def build_chat_url(ws_base_url: str, conversation_id: ConversationId) -> str:
    return f"{ws_base_url.rstrip('/')}/ws/chats/{conversation_id}/"


def decode_frame(frame: Union[str, bytes], conversation_id: Optional[str] = None) -> TransportEvent:
    """把一帧原始数据翻译为 TransportEvent。"""

    # 二进制帧里的非法 UTF-8 字节替换为 U+FFFD，不让单帧拖垮整个连接
    data = frame.decode("utf-8", errors="replace") if isinstance(frame, (bytes, bytearray)) else frame
    if data.startswith("{"):
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            # 不是 JSON，按普通文本片段处理
            parsed = None
        if isinstance(parsed, dict) and parsed.get(HANDSHAKE_FIELD) == HANDSHAKE_MESSAGE:
            return TransportEvent(kind="handshake", conversation_id=conversation_id, payload=parsed)
    if data == COMPLETE_SENTINEL:
        return TransportEvent(kind="complete", conversation_id=conversation_id)
    return TransportEvent(kind="chunk", conversation_id=conversation_id, text=data)


def encode_user_message(text: str) -> str:
    return json.dumps({"text": text}, ensure_ascii=False)
