"""流式累加器。

把传输层事件折叠进会话历史：

- 第一个 chunk 创建助手消息（sealed=False），之后的 chunk 原样追加；
- complete 封存该消息；
- error/closed 时若仍有未封存的助手消息，以 partial 状态封存，
  这样下一回合会新建消息，而不是续写到残缺的回复后面。

apply_event 是纯函数：不修改传入的列表与消息，总是返回新的历史。
"""

from dataclasses import replace
from typing import Optional

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import (
    ConversationHistory,
    ConversationId,
    Message,
    TransportEvent,
    new_message_id,
    utcnow,
)
from chat_core.sync.cache import LocalMessageCache


def apply_event(history: ConversationHistory, event: TransportEvent) -> ConversationHistory:
    """(历史, 事件) -> 新历史。"""

    index = _streaming_index(history)

    if event.kind == "chunk":
        text = event.text or ""
        if index is None:
            msg = Message(
                id=new_message_id(),
                role="assistant",
                content=text,
                timestamp=utcnow(),
                sealed=False,
                status="streaming",
            )
            return [*history, msg]
        current = history[index]
        return _replace_at(history, index, replace(current, content=current.content + text))

    if event.kind == "complete":
        if index is None:
            return history
        return _replace_at(history, index, replace(history[index], sealed=True, status="complete"))

    if event.kind in ("error", "closed"):
        if index is None:
            return history
        return _replace_at(history, index, replace(history[index], sealed=True, status="partial"))

    return history


def check_single_stream(history: ConversationHistory) -> None:
    """校验“同一会话至多一条未封存助手消息”。"""

    streaming = [m.id for m in history if m.is_streaming]
    if len(streaming) > 1:
        raise ValidationError(code="MULTIPLE_STREAMS", message="more than one unsealed assistant message", ids=streaming)


class StreamAccumulator:
    """在 apply_event 之上加一层写穿缓存。"""

    PERSISTED_KINDS = ("chunk", "complete", "error", "closed")

    def __init__(self, cache: LocalMessageCache):
        self._cache = cache

    def feed(
        self,
        conversation_id: Optional[ConversationId],
        history: ConversationHistory,
        event: TransportEvent,
    ) -> ConversationHistory:
        updated = apply_event(history, event)
        if conversation_id is not None and event.kind in self.PERSISTED_KINDS and updated is not history:
            self._cache.save(conversation_id, updated)
        return updated


def _streaming_index(history: ConversationHistory) -> Optional[int]:
    for i in range(len(history) - 1, -1, -1):
        if history[i].is_streaming:
            return i
    return None


def _replace_at(history: ConversationHistory, index: int, message: Message) -> ConversationHistory:
    updated = list(history)
    updated[index] = message
    return updated
