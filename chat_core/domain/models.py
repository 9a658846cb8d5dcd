"""会话同步引擎共享的数据模型。

本模块定义了传输层、流式累加器与会话控制器之间共享的标准结构：

- Message: 一条对话消息（user/assistant），流式阶段内容可变，封存后不可变。
- ConversationHistory: 按对话顺序排列的消息列表。
- ConnectionState: 单个 WebSocket 连接的状态机状态。
- TransportEvent: 传输层把线协议帧翻译成的抽象事件。

缓存与 REST 适配层只依赖这些模型，并各自负责与 JSON 之间的转换。
"""

import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union


ConversationId = Union[str, int]

# 消息角色
Role = Literal["user", "assistant"]

# 消息投递/流式状态：
# - user:      pending -> sent | failed
# - assistant: streaming -> complete | partial
MessageStatus = Literal["pending", "sent", "failed", "streaming", "complete", "partial"]

EventKind = Literal["handshake", "chunk", "complete", "error", "closed"]


_id_seq = itertools.count()


def new_message_id() -> str:
    """生成本地唯一、按创建顺序单调递增的消息 ID。"""

    return f"msg-{time.time_ns():020d}-{next(_id_seq):06d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """一条对话消息。

    - id: 本地唯一 ID，服务端历史则沿用服务端 ID。
    - role: user 或 assistant。
    - content: 纯文本内容；sealed 之前可被追加。
    - timestamp: 创建时间（UTC）。
    - sealed: 流式阶段是否已结束。
    - status: 投递状态，见 MessageStatus。
    """

    id: str
    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    sealed: bool = True
    status: MessageStatus = "complete"

    @property
    def is_streaming(self) -> bool:
        return self.role == "assistant" and not self.sealed


ConversationHistory = List[Message]


class ConnectionState(str, Enum):
    """WebSocket 连接状态。"""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class TransportEvent:
    """传输层事件。

    kind:
        - "handshake": 服务端确认连接可用，payload 为握手 JSON。
        - "chunk": 助手回复的一段文本，text 为原始帧内容。
        - "complete": 当前助手回合结束。
        - "error": 底层 socket 错误，error 为 TransportError。
        - "closed": 连接已关闭。
    """

    kind: EventKind
    conversation_id: Optional[str] = None
    text: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None


def find_streaming_message(history: ConversationHistory) -> Optional[Message]:
    """返回唯一一条未封存的助手消息（若存在）。"""

    for msg in reversed(history):
        if msg.is_streaming:
            return msg
    return None


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "timestamp": format_timestamp(message.timestamp),
        "sealed": message.sealed,
        "status": message.status,
    }


def message_from_dict(data: Dict[str, Any]) -> Message:
    role = data.get("role")
    if role not in ("user", "assistant"):
        raise ValueError(f"unknown role: {role!r}")
    sealed = bool(data.get("sealed", True))
    default_status = "sent" if role == "user" else ("complete" if sealed else "streaming")
    return Message(
        id=str(data["id"]),
        role=role,
        content=data.get("content") or "",
        timestamp=parse_timestamp(data.get("timestamp")),
        sealed=sealed,
        status=data.get("status") or default_status,
    )


@dataclass
class PendingSend:
    """已请求发送但尚未确认写入 OPEN 连接的用户消息（每个会话至多一条）。"""

    text: str
    conversation_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
