"""单个会话的 WebSocket 连接。

TransportConnection 负责：

1. 为当前绑定的会话维护唯一的 socket，并把线协议翻译为 TransportEvent。
2. 维护 IDLE -> CONNECTING -> OPEN -> CLOSING -> CLOSED 状态机。
3. 提供唯一的“确保连接可用”操作 ensure_open：按尝试（attempt）等待握手 future，
   失败时指数退避重连，直到超过上限。
4. 用 generation 计数隔离旧连接：close()/重新绑定之后，旧 socket 上到达的事件一律丢弃。
"""

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ConnectFailed, SendRejected, TransportError
from chat_core.domain.models import ConnectionState, ConversationId, TransportEvent
from chat_core.infrastructure.logging.logger import logger
from chat_core.transport.protocol import build_chat_url, decode_frame, encode_user_message


Listener = Callable[[TransportEvent], None]
Connector = Callable[[str], Awaitable[Any]]


class TransportConnection:
    """会话级 WebSocket 连接。

    - open: 幂等地为某个会话发起连接，不等待握手。
    - ensure_open: 等待握手（有上限），必要时退避重连。
    - send: 仅在 OPEN 时发送，否则抛出 SendRejected，不排队。
    - close: 任意状态下都可安全调用。
    """

    def __init__(
        self,
        ws_base_url: Optional[str] = None,
        connector: Optional[Connector] = None,
        handshake_timeout: Optional[float] = None,
        retry_initial_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
    ):
        self._ws_base_url = ws_base_url or settings.ws_base_url
        self._handshake_timeout = handshake_timeout or settings.handshake_timeout
        self._retry_initial_delay = retry_initial_delay or settings.retry_initial_delay
        self._retry_max_delay = retry_max_delay or settings.retry_max_delay
        self._connector = connector or partial(websockets.connect, open_timeout=self._handshake_timeout)

        self._state = ConnectionState.IDLE
        self._conversation_id: Optional[str] = None
        self._close_reason: Optional[str] = None
        self._listener: Optional[Listener] = None
        self._socket: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._attempt: Optional[asyncio.Future] = None
        self._handshaken = False
        # 每次新建或拆除 socket 都递增；事件只在 generation 一致时投递
        self._generation = 0
        # 外部拆除（close/切换会话）计数，用于取消正在等待握手的调用方
        self._teardowns = 0

    # ---- 状态 ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    def is_open_for(self, conversation_id: ConversationId) -> bool:
        return self._state is ConnectionState.OPEN and self._conversation_id == str(conversation_id)

    def set_listener(self, listener: Optional[Listener]) -> None:
        self._listener = listener

    # ---- 生命周期 ----

    async def open(self, conversation_id: ConversationId) -> None:
        """为会话发起连接；同一会话已在连接或已打开时为 no-op。"""

        cid = str(conversation_id)
        if self._conversation_id == cid and self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        if self._conversation_id != cid and self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            self._teardowns += 1
            await self._shutdown("rebound to another conversation")

        self._generation += 1
        generation = self._generation
        self._conversation_id = cid
        self._close_reason = None
        self._handshaken = False
        self._socket = None
        self._set_state(ConnectionState.CONNECTING)
        attempt = asyncio.get_running_loop().create_future()
        self._attempt = attempt
        self._reader = asyncio.create_task(self._run(generation, cid, attempt))

    async def ensure_open(self, conversation_id: ConversationId, timeout: Optional[float] = None) -> None:
        """确保连接处于 OPEN 并已完成握手。

        每次尝试都等待该尝试自己的 future（握手时为 True，握手前关闭为 False），
        不做轮询。尝试失败后按 retry_initial_delay 起步指数退避重连，
        总耗时超过 timeout 时关闭连接并抛出 ConnectFailed。
        等待期间连接被 close() 或切换到其他会话时立即抛出 ConnectFailed。
        """

        cid = str(conversation_id)
        bound = self._handshake_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + bound
        delay = self._retry_initial_delay
        log_ctx = {"conversation_id": cid, "timeout": bound}

        if self.is_open_for(cid):
            return
        await self.open(cid)
        teardowns = self._teardowns
        attempts = 0

        while True:
            if self.is_open_for(cid):
                return
            if self._state is ConnectionState.CLOSED:
                await self.open(cid)
            attempt = self._attempt
            attempts += 1
            remaining = deadline - loop.time()
            if attempt is None or remaining <= 0:
                break
            try:
                ok = await asyncio.wait_for(asyncio.shield(attempt), remaining)
            except asyncio.TimeoutError:
                break
            if self._teardowns != teardowns:
                raise self._cancelled(cid)
            if ok and self.is_open_for(cid):
                return
            remaining = deadline - loop.time()
            if remaining <= delay:
                break
            self._log(logging.INFO, "Retrying WebSocket connection", log_ctx, attempt=attempts, delay=delay)
            await asyncio.sleep(delay)
            if self._teardowns != teardowns:
                raise self._cancelled(cid)
            delay = min(delay * 2, self._retry_max_delay)

        if self._teardowns != teardowns:
            raise self._cancelled(cid)
        if self._conversation_id == cid:
            await self._shutdown("handshake timeout")
        self._log(logging.WARNING, "Handshake not received in time", log_ctx, attempts=attempts)
        raise ConnectFailed(
            code="CONNECT_TIMEOUT",
            message=f"no handshake within {bound:g}s",
            conversation_id=cid,
            attempts=attempts,
        )

    async def send(self, text: str) -> None:
        socket = self._socket
        if self._state is not ConnectionState.OPEN or socket is None:
            raise SendRejected(
                code="NOT_CONNECTED",
                message="WebSocket is not connected",
                state=self._state.value,
                conversation_id=self._conversation_id,
            )
        try:
            await socket.send(encode_user_message(text))
        except Exception as e:
            raise SendRejected(code="SEND_FAILED", message=str(e), conversation_id=self._conversation_id) from e
        self._log(logging.INFO, "Sent user message", {"conversation_id": self._conversation_id}, length=len(text))

    async def close(self, reason: str = "closed by client") -> None:
        """关闭连接并丢弃之后到达的所有事件；从未打开过也可调用。"""

        self._teardowns += 1
        await self._shutdown(reason)

    # ---- 内部实现 ----

    async def _shutdown(self, reason: str) -> None:
        self._generation += 1
        generation = self._generation
        reader, socket, attempt = self._reader, self._socket, self._attempt
        self._reader = None
        self._socket = None
        self._attempt = None
        self._set_state(ConnectionState.CLOSING)
        if attempt is not None and not attempt.done():
            attempt.set_result(False)
        if reader is not None and not reader.done():
            reader.cancel()
        if socket is not None:
            try:
                await socket.close()
            except Exception as e:
                self._log(logging.WARNING, "Socket close failed", {"conversation_id": self._conversation_id}, error=str(e))
        # close 期间可能已有新的 open()，此时不要覆盖新连接的状态
        if generation == self._generation:
            self._close_reason = reason
            self._set_state(ConnectionState.CLOSED)

    async def _run(self, generation: int, cid: str, attempt: asyncio.Future) -> None:
        url = build_chat_url(self._ws_base_url, cid)
        log_ctx = {"conversation_id": cid, "url": url}
        reason = "closed by server"
        try:
            socket = await self._connector(url)
            if generation != self._generation:
                await socket.close()
                return
            self._socket = socket
            self._log(logging.INFO, "WebSocket connected", log_ctx)
            async for frame in socket:
                if generation != self._generation:
                    break
                self._dispatch(generation, decode_frame(frame, cid), attempt)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            if generation == self._generation:
                self._log(logging.WARNING, "WebSocket error", log_ctx, error=reason)
                err = TransportError(code="TRANSPORT_ERROR", message=str(e) or type(e).__name__, conversation_id=cid)
                self._emit(generation, TransportEvent(kind="error", conversation_id=cid, error=err))
        finally:
            if generation == self._generation:
                self._socket = None
                self._reader = None
                self._close_reason = reason
                self._set_state(ConnectionState.CLOSED)
                if not attempt.done():
                    attempt.set_result(False)
                self._log(logging.INFO, "WebSocket closed", log_ctx, reason=reason)
                self._emit(generation, TransportEvent(kind="closed", conversation_id=cid))

    def _dispatch(self, generation: int, event: TransportEvent, attempt: asyncio.Future) -> None:
        if event.kind == "handshake":
            if self._handshaken:
                self._log(logging.WARNING, "Duplicate handshake ignored", {"conversation_id": event.conversation_id})
                return
            self._handshaken = True
            self._set_state(ConnectionState.OPEN)
            if not attempt.done():
                attempt.set_result(True)
        self._emit(generation, event)

    def _emit(self, generation: int, event: TransportEvent) -> None:
        if generation != self._generation or self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            logger.exception("Transport listener failed", extra={"extra": {"kind": event.kind}})

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state

    def _cancelled(self, cid: str) -> ConnectFailed:
        return ConnectFailed(
            code="CONNECT_CANCELLED",
            message="connection was torn down while waiting for handshake",
            conversation_id=cid,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
