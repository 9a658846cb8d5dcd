"""会话控制器。

ChatSession 是视图层驱动的门面，负责协调：

1. 会话切换：拆除旧连接、加载历史（REST 为准，失败时回退本地缓存）、为新会话建立连接。
2. 用户发送：必要时先创建会话，乐观追加用户消息，确保连接握手后再发送。
3. 传输事件：只接受当前会话的事件，交给 StreamAccumulator 折叠进历史并写穿缓存。

每次拆除都会递增 epoch；任何在 await 之后发现 epoch 已变化的操作都放弃写入，
避免旧会话的加载结果或流式回复落到新会话的历史里。
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chat_core.config.settings import settings as default_settings
from chat_core.domain.exceptions import (
    ConnectFailed,
    HistoryLoadFailed,
    RestError,
    SendRejected,
    ValidationError,
)
from chat_core.domain.models import (
    ConnectionState,
    ConversationHistory,
    ConversationId,
    Message,
    MessageStatus,
    PendingSend,
    TransportEvent,
    find_streaming_message,
    new_message_id,
    utcnow,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ChatApi
from chat_core.sync.accumulator import StreamAccumulator, apply_event
from chat_core.sync.cache import LocalMessageCache
from chat_core.transport.connection import TransportConnection


UpdateCallback = Callable[[Sequence[Message]], None]


class ChatSession:
    def __init__(
        self,
        api: ChatApi,
        cache: LocalMessageCache,
        transport: Optional[TransportConnection] = None,
        settings=default_settings,
        on_update: Optional[UpdateCallback] = None,
        refresh_chats_on_complete: bool = True,
    ):
        self._api = api
        self._cache = cache
        self._settings = settings
        self._transport = transport or TransportConnection(
            ws_base_url=settings.ws_base_url,
            handshake_timeout=settings.handshake_timeout,
            retry_initial_delay=settings.retry_initial_delay,
            retry_max_delay=settings.retry_max_delay,
        )
        self._transport.set_listener(self._on_event)
        self._accumulator = StreamAccumulator(cache)
        self._on_update = on_update
        self._refresh_chats_on_complete = refresh_chats_on_complete

        self._assistant_id: Optional[ConversationId] = None
        self._conversation_id: Optional[str] = None
        self._history: ConversationHistory = []
        self._pending: Optional[PendingSend] = None
        self._chats: List[Dict[str, Any]] = []
        self._epoch = 0
        self._background: set[asyncio.Task] = set()
        # 正在进行的历史加载；加载结束或被拆除时完成
        self._loading: Optional[asyncio.Future] = None

    # ---- 只读快照 ----

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._history)

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def assistant_id(self) -> Optional[ConversationId]:
        return self._assistant_id

    @property
    def connection_state(self) -> ConnectionState:
        return self._transport.state

    @property
    def is_streaming(self) -> bool:
        return find_streaming_message(self._history) is not None

    @property
    def pending_text(self) -> Optional[str]:
        return self._pending.text if self._pending else None

    @property
    def chats(self) -> List[Dict[str, Any]]:
        return list(self._chats)

    # ---- 会话切换 ----

    async def open_conversation(
        self,
        assistant_id: ConversationId,
        conversation_id: Optional[ConversationId] = None,
    ) -> ConversationHistory:
        """打开会话并返回历史。

        没有 conversation_id 时历史为空且不建立连接，直到第一次 submit。
        REST 与缓存都失败时历史为空并抛出 HistoryLoadFailed，会话仍绑定该 ID。
        """

        await self._teardown()
        epoch = self._epoch
        self._assistant_id = assistant_id
        self._conversation_id = str(conversation_id) if conversation_id is not None else None
        self._set_history([])
        if self._conversation_id is None:
            return []

        cid = self._conversation_id
        log_ctx = {"conversation_id": cid, "assistant_id": assistant_id}
        loaded = asyncio.get_running_loop().create_future()
        self._loading = loaded
        try:
            history, cause = await self._hydrate(cid, log_ctx)
            if epoch != self._epoch:
                self._log(logging.INFO, "Discarded stale history load", log_ctx)
                return list(self._history)
            self._set_history(history)
        finally:
            # 等待中的 submit 在此之后才追加消息
            if self._loading is loaded:
                self._loading = None
            if not loaded.done():
                loaded.set_result(None)
        if cause is not None:
            raise HistoryLoadFailed(
                code="HISTORY_LOAD_FAILED",
                message="history unavailable from server and local cache",
                conversation_id=cid,
            ) from cause
        await self._transport.open(cid)
        self._log(logging.INFO, "Opened conversation", log_ctx, messages=len(history))
        return list(self._history)

    async def switch_conversation(self, conversation_id: Optional[ConversationId]) -> ConversationHistory:
        if self._assistant_id is None:
            raise ValidationError(code="NO_ASSISTANT", message="open_conversation() must be called first")
        return await self.open_conversation(self._assistant_id, conversation_id)

    async def delete_conversation(self, conversation_id: ConversationId) -> None:
        cid = str(conversation_id)
        await self._api.delete_chat(cid)
        self._cache.purge(cid)
        self._chats = [c for c in self._chats if str(c.get("id")) != cid]
        if self._conversation_id == cid:
            await self._teardown()
            self._conversation_id = None
            self._set_history([])
        self._log(logging.INFO, "Deleted conversation", {"conversation_id": cid})

    async def refresh_chats(self) -> List[Dict[str, Any]]:
        """刷新当前助手的会话列表。"""

        if self._assistant_id is None:
            return []
        self._chats = await self._api.list_chats(self._assistant_id)
        return list(self._chats)

    async def close(self) -> None:
        await self._teardown()
        self._conversation_id = None
        self._set_history([])
        for task in list(self._background):
            task.cancel()

    # ---- 发送 ----

    async def submit(self, text: str) -> Optional[Message]:
        """发送一条用户消息。

        步骤：
        1. 去除首尾空白后为空则直接返回 None，不发起任何调用。
        2. 尚未绑定会话时通过 REST 创建会话并建立连接（唯一产生会话 ID 的地方）。
        3. 乐观追加已封存的用户消息（status="pending"）并写缓存，失败也不回滚。
        4. 等待握手（有上限），超时抛出 ConnectFailed，消息标记为 failed。
        5. 发送；连接仍不可用时按 ConnectFailed 处理。
        """

        content = (text or "").strip()
        if not content:
            return None
        if self._pending is not None:
            raise SendRejected(
                code="SEND_IN_PROGRESS",
                message="previous message is still being sent",
                conversation_id=self._conversation_id,
            )
        if self._conversation_id is None and self._assistant_id is None:
            raise ValidationError(code="NO_ASSISTANT", message="open_conversation() must be called first")

        pending = PendingSend(text=content, conversation_id=self._conversation_id)
        self._pending = pending
        try:
            return await self._submit(content, self._epoch)
        finally:
            if self._pending is pending:
                self._pending = None

    async def _submit(self, content: str, epoch: int) -> Message:
        cid = self._conversation_id
        loading = self._loading
        if loading is not None and not loading.done():
            self._log(logging.INFO, "Waiting for history load before send", {"conversation_id": cid})
            await asyncio.shield(loading)
            self._ensure_current(epoch, cid)
        is_new = False
        if cid is None:
            chat = await self._api.create_chat(self._settings.default_chat_name, self._assistant_id)
            self._ensure_current(epoch, None)
            cid = str(chat["id"])
            self._conversation_id = cid
            if self._pending is not None:
                self._pending.conversation_id = cid
            is_new = True
            self._log(logging.INFO, "Created conversation", {"conversation_id": cid, "assistant_id": self._assistant_id})
            await self._transport.open(cid)

        user_msg = Message(
            id=new_message_id(),
            role="user",
            content=content,
            timestamp=utcnow(),
            sealed=True,
            status="pending",
        )
        self._set_history([*self._history, user_msg])
        self._cache.save(cid, self._history)

        if is_new:
            await self._rename_after_first_message(cid, content)
            self._ensure_current(epoch, cid)

        try:
            await self._transport.ensure_open(cid)
            self._ensure_current(epoch, cid)
            await self._transport.send(content)
        except ConnectFailed:
            self._mark(epoch, cid, user_msg.id, "failed")
            raise
        except SendRejected as e:
            self._mark(epoch, cid, user_msg.id, "failed")
            raise ConnectFailed(code="SEND_FAILED", message=e.message, conversation_id=cid) from e
        return self._mark(epoch, cid, user_msg.id, "sent") or user_msg

    async def _rename_after_first_message(self, cid: str, content: str) -> None:
        limit = self._settings.chat_title_max_length
        title = content if len(content) <= limit else content[:limit] + "..."
        try:
            await self._api.update_chat_name(cid, title)
        except RestError as e:
            self._log(logging.WARNING, "Chat rename failed", {"conversation_id": cid}, error=e.message)
            return
        await self._refresh_chats_quietly()

    # ---- 传输事件 ----

    def _on_event(self, event: TransportEvent) -> None:
        cid = self._conversation_id
        if cid is None or event.conversation_id != cid:
            self._log(
                logging.INFO,
                "Dropped event for inactive conversation",
                {"conversation_id": event.conversation_id, "active": cid},
                kind=event.kind,
            )
            return
        if event.kind == "handshake":
            self._log(logging.INFO, "Handshake received", {"conversation_id": cid})
            return
        if event.kind == "error":
            self._log(logging.WARNING, "Transport error", {"conversation_id": cid}, error=str(event.error))

        self._set_history(self._accumulator.feed(cid, self._history, event))

        if event.kind == "complete" and self._refresh_chats_on_complete:
            self._spawn(self._refresh_chats_quietly())

    # ---- 内部实现 ----

    async def _hydrate(
        self, cid: str, log_ctx: Dict[str, Any]
    ) -> Tuple[ConversationHistory, Optional[BaseException]]:
        """REST 为准；REST 失败回退缓存；REST 返回空列表时也尝试缓存。"""

        try:
            history = await self._api.fetch_messages(cid)
        except RestError as e:
            self._log(logging.WARNING, "History fetch failed, using cache", log_ctx, error=e.message, code=e.code)
            cached = self._cache.load(cid)
            if cached is None:
                return [], e
            return self._seal_interrupted(cached), None
        if not history:
            return self._seal_interrupted(self._cache.load(cid) or []), None
        self._cache.save(cid, history)
        return history, None

    @staticmethod
    def _seal_interrupted(history: ConversationHistory) -> ConversationHistory:
        # 缓存里残留的未封存回复来自上一次中断的流，不能再被续写
        return apply_event(history, TransportEvent(kind="closed"))

    async def _teardown(self) -> None:
        self._epoch += 1
        self._pending = None
        loading, self._loading = self._loading, None
        if loading is not None and not loading.done():
            loading.set_result(None)
        if self._transport.state is not ConnectionState.IDLE:
            await self._transport.close()

    async def _refresh_chats_quietly(self) -> None:
        try:
            await self.refresh_chats()
        except RestError as e:
            self._log(logging.WARNING, "Chat list refresh failed", {"assistant_id": self._assistant_id}, error=e.message)

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _ensure_current(self, epoch: int, cid: Optional[str]) -> None:
        if epoch != self._epoch:
            raise ConnectFailed(
                code="CONNECT_CANCELLED",
                message="conversation changed before the message was sent",
                conversation_id=cid,
            )

    def _mark(self, epoch: int, cid: str, message_id: str, status: MessageStatus) -> Optional[Message]:
        """更新用户消息的投递状态；会话已切走时只改写它自己的缓存。"""

        current = epoch == self._epoch and self._conversation_id == cid
        history = self._history if current else self._cache.load(cid)
        if not history:
            return None
        marked: Optional[Message] = None
        updated: ConversationHistory = []
        for msg in history:
            if msg.id == message_id:
                msg = replace(msg, status=status)
                marked = msg
            updated.append(msg)
        if marked is None:
            return None
        if current:
            self._set_history(updated)
        self._cache.save(cid, updated)
        return marked

    def _set_history(self, history: ConversationHistory) -> None:
        if history is self._history:
            return
        self._history = history
        if self._on_update is not None:
            try:
                self._on_update(tuple(history))
            except Exception:
                logger.exception("History update callback failed")

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
