"""会话历史的本地缓存。

缓存只是离线/兜底数据源，从不作为权威来源：读写失败只记录日志，
调用方拿到 None/False 后按“没有缓存”继续。
"""

import json
import logging
from typing import Optional

from chat_core.domain.cache import KeyValueStore
from chat_core.domain.models import ConversationHistory, ConversationId, message_from_dict, message_to_dict
from chat_core.infrastructure.logging.logger import logger


CACHE_KEY_PREFIX = "chat_messages_"


def cache_key(conversation_id: ConversationId) -> str:
    return f"{CACHE_KEY_PREFIX}{conversation_id}"


class LocalMessageCache:
    def __init__(self, store: KeyValueStore):
        self._store = store

    def load(self, conversation_id: ConversationId) -> Optional[ConversationHistory]:
        """读取缓存的历史；缺失、损坏或读取失败时返回 None。"""

        key = cache_key(conversation_id)
        try:
            raw = self._store.get_item(key)
            if raw is None:
                return None
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("cached history is not a list")
            return [message_from_dict(item) for item in items]
        except Exception as e:
            self._log(logging.WARNING, "Cache read failed", key, error=str(e))
            return None

    def save(self, conversation_id: ConversationId, history: ConversationHistory) -> bool:
        key = cache_key(conversation_id)
        try:
            value = json.dumps([message_to_dict(m) for m in history], ensure_ascii=False)
            self._store.set_item(key, value)
            return True
        except Exception as e:
            self._log(logging.WARNING, "Cache write failed", key, error=str(e))
            return False

    def purge(self, conversation_id: ConversationId) -> bool:
        key = cache_key(conversation_id)
        try:
            self._store.remove_item(key)
            return True
        except Exception as e:
            self._log(logging.WARNING, "Cache purge failed", key, error=str(e))
            return False

    @staticmethod
    def _log(level: int, message: str, key: str, **fields) -> None:
        payload = {"cache_key": key}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
