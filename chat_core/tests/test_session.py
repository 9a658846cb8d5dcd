import asyncio
import json

import pytest

from chat_core.config.settings import ChatSettings
from chat_core.domain.exceptions import (
    ConnectFailed,
    HistoryLoadFailed,
    NetworkError,
    SendRejected,
    ValidationError,
)
from chat_core.domain.models import ConnectionState, Message, TransportEvent
from chat_core.infrastructure.storage.json_store import JsonFileStore
from chat_core.providers.rest_client import ChatApiClient
from chat_core.sync.cache import LocalMessageCache
from chat_core.sync.session import ChatSession
from chat_core.transport.connection import TransportConnection


HANDSHAKE = '{"message": "Connected"}'


class FakeSocket:
    def __init__(self, *frames, handshake=True):
        self.sent = []
        self.closed = False
        self._queue = asyncio.Queue()
        if handshake:
            self._queue.put_nowait(HANDSHAKE)
        for frame in frames:
            self._queue.put_nowait(frame)

    def push(self, frame):
        self._queue.put_nowait(frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._queue.get()
        if frame is None:
            raise StopAsyncIteration
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._queue.put_nowait(None)


class FakeConnector:
    def __init__(self, *sockets):
        self._queue = list(sockets)
        self.urls = []
        self.created = []

    async def __call__(self, url):
        self.urls.append(url)
        item = self._queue.pop(0) if self._queue else FakeSocket()
        self.created.append(item)
        return item


class FakeApi:
    def __init__(self, messages=None, chat_id=42, fetch_error=None):
        self.messages = messages or {}
        self.chat_id = chat_id
        self.fetch_error = fetch_error
        self.chats = []
        self.calls = []
        self.gates = {}

    async def create_chat(self, name, assistant_id):
        self.calls.append(("create_chat", name, assistant_id))
        chat = {"id": self.chat_id, "name": name, "assistant": {"id": assistant_id}}
        self.chats.append(chat)
        return chat

    async def get_chat(self, chat_id):
        self.calls.append(("get_chat", chat_id))
        return {"id": chat_id}

    async def fetch_messages(self, chat_id):
        self.calls.append(("fetch_messages", chat_id))
        gate = self.gates.get(str(chat_id))
        if gate is not None:
            await gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.messages.get(str(chat_id), []))

    async def update_chat_name(self, chat_id, name):
        self.calls.append(("update_chat_name", chat_id, name))
        return {"id": chat_id, "name": name}

    async def delete_chat(self, chat_id):
        self.calls.append(("delete_chat", chat_id))

    async def list_chats(self, assistant_id=None):
        self.calls.append(("list_chats", assistant_id))
        return list(self.chats)


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_session(tmp_path, api, connector, handshake_timeout=1.0, **kw):
    cfg = ChatSettings(
        ws_base_url="wss://example.test",
        handshake_timeout=handshake_timeout,
        retry_initial_delay=0.01,
        retry_max_delay=0.05,
        cache_root=str(tmp_path),
    )
    transport = TransportConnection(
        ws_base_url=cfg.ws_base_url,
        connector=connector,
        handshake_timeout=cfg.handshake_timeout,
        retry_initial_delay=cfg.retry_initial_delay,
        retry_max_delay=cfg.retry_max_delay,
    )
    cache = LocalMessageCache(JsonFileStore(root=tmp_path))
    return ChatSession(api=api, cache=cache, transport=transport, settings=cfg, **kw), cache


def _server_history():
    return [
        Message(id="1", role="user", content="earlier question", sealed=True, status="sent"),
        Message(id="2", role="assistant", content="earlier answer", sealed=True, status="complete"),
    ]


@pytest.mark.asyncio
async def test_first_submit_creates_conversation_and_sends(tmp_path):
    api = FakeApi()
    connector = FakeConnector()
    session, cache = make_session(tmp_path, api, connector)

    history = await session.open_conversation(assistant_id=7)
    assert history == []
    assert session.connection_state is ConnectionState.IDLE
    assert connector.urls == []

    msg = await session.submit("  hello ")
    assert api.calls[0] == ("create_chat", "New chat", 7)
    assert ("update_chat_name", "42", "hello") in api.calls
    assert session.conversation_id == "42"
    assert connector.urls == ["wss://example.test/ws/chats/42/"]
    assert [json.loads(s) for s in connector.created[0].sent] == [{"text": "hello"}]

    assert msg.status == "sent"
    assert [(m.role, m.content, m.sealed) for m in session.messages] == [("user", "hello", True)]
    assert cache.load("42")[0].status == "sent"
    assert session.pending_text is None
    await session.close()


@pytest.mark.asyncio
async def test_long_first_message_is_truncated_for_title(tmp_path):
    api = FakeApi()
    session, _ = make_session(tmp_path, api, FakeConnector())
    await session.open_conversation(7)
    text = "x" * 80
    await session.submit(text)
    renames = [c for c in api.calls if c[0] == "update_chat_name"]
    assert renames == [("update_chat_name", "42", "x" * 50 + "...")]
    await session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_blank_submit_is_noop(tmp_path, text):
    api = FakeApi()
    connector = FakeConnector()
    session, _ = make_session(tmp_path, api, connector)
    await session.open_conversation(7)
    assert await session.submit(text) is None
    assert session.messages == ()
    assert api.calls == []
    assert connector.urls == []


@pytest.mark.asyncio
async def test_submit_requires_assistant(tmp_path):
    session, _ = make_session(tmp_path, FakeApi(), FakeConnector())
    with pytest.raises(ValidationError):
        await session.submit("hello")


@pytest.mark.asyncio
async def test_streamed_reply_is_accumulated_and_cached(tmp_path):
    sock = FakeSocket()
    api = FakeApi(messages={"42": _server_history()})
    session, cache = make_session(tmp_path, api, FakeConnector(sock))

    history = await session.open_conversation(7, 42)
    assert [m.content for m in history] == ["earlier question", "earlier answer"]
    await session.submit("next?")

    sock.push("Hel")
    await wait_until(lambda: session.is_streaming)
    sock.push("lo")
    sock.push("[COMPLETE]")
    await wait_until(lambda: not session.is_streaming and session.messages[-1].role == "assistant")

    last = session.messages[-1]
    assert last.content == "Hello"
    assert last.sealed is True
    assert len([m for m in session.messages if m.role == "assistant"]) == 2
    assert cache.load(42) == list(session.messages)
    # 回合结束后刷新会话列表
    await wait_until(lambda: ("list_chats", 7) in api.calls)
    await session.close()


@pytest.mark.asyncio
async def test_handshake_timeout_keeps_optimistic_message(tmp_path):
    api = FakeApi()
    session, cache = make_session(tmp_path, api, FakeConnector(FakeSocket(handshake=False)), handshake_timeout=0.2)
    await session.open_conversation(7, 42)

    with pytest.raises(ConnectFailed) as exc:
        await session.submit("hi")
    assert exc.value.code == "CONNECT_TIMEOUT"
    assert [(m.role, m.content, m.status) for m in session.messages] == [("user", "hi", "failed")]
    assert cache.load(42)[0].status == "failed"
    assert session.pending_text is None
    assert session.connection_state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_retry_after_connect_failure_succeeds(tmp_path):
    retry_sock = FakeSocket()
    connector = FakeConnector(FakeSocket(handshake=False), retry_sock)
    session, _ = make_session(tmp_path, FakeApi(), connector, handshake_timeout=0.2)
    await session.open_conversation(7, 42)
    with pytest.raises(ConnectFailed):
        await session.submit("first")
    msg = await session.submit("second")
    assert msg.status == "sent"
    assert [m.status for m in session.messages] == ["failed", "sent"]
    assert [json.loads(s)["text"] for s in retry_sock.sent] == ["second"]
    await session.close()


@pytest.mark.asyncio
async def test_second_submit_while_pending_is_rejected(tmp_path):
    session, _ = make_session(tmp_path, FakeApi(), FakeConnector(FakeSocket(handshake=False)), handshake_timeout=0.5)
    await session.open_conversation(7, 42)
    first = asyncio.create_task(session.submit("one"))
    await wait_until(lambda: session.pending_text == "one")

    with pytest.raises(SendRejected) as exc:
        await session.submit("two")
    assert exc.value.code == "SEND_IN_PROGRESS"
    assert [m.content for m in session.messages] == ["one"]

    with pytest.raises(ConnectFailed):
        await first


@pytest.mark.asyncio
async def test_switch_discards_events_from_previous_conversation(tmp_path):
    sock_a = FakeSocket()
    sock_b = FakeSocket()
    api = FakeApi(messages={"2": [Message(id="b1", role="user", content="B question")]})
    session, cache = make_session(tmp_path, api, FakeConnector(sock_a, sock_b))

    await session.open_conversation(7, 1)
    await session.submit("A question")
    sock_a.push("A partial ")
    await wait_until(lambda: session.is_streaming)

    await session.switch_conversation(2)
    assert sock_a.closed is True
    assert [m.content for m in session.messages] == ["B question"]

    sock_a.push("A late chunk")
    session._on_event(TransportEvent(kind="chunk", conversation_id="1", text="A stale"))
    await session._transport.ensure_open(2)
    sock_b.push("B answer")
    sock_b.push("[COMPLETE]")
    await wait_until(lambda: len(session.messages) == 2 and session.messages[-1].sealed)

    contents = [m.content for m in session.messages]
    assert contents == ["B question", "B answer"]
    # A 的缓存保持切换前的样子
    assert [m.content for m in cache.load(1)] == ["A question", "A partial "]
    await session.close()


@pytest.mark.asyncio
async def test_stale_history_load_is_discarded(tmp_path):
    api = FakeApi(messages={
        "1": [Message(id="a1", role="user", content="from A")],
        "2": [Message(id="b1", role="user", content="from B")],
    })
    api.gates["1"] = asyncio.Event()
    session, _ = make_session(tmp_path, api, FakeConnector())

    slow = asyncio.create_task(session.open_conversation(7, 1))
    await wait_until(lambda: ("fetch_messages", "1") in api.calls)
    await session.switch_conversation(2)
    api.gates["1"].set()
    await slow

    assert session.conversation_id == "2"
    assert [m.content for m in session.messages] == ["from B"]
    await session.close()


@pytest.mark.asyncio
async def test_rest_failure_falls_back_to_cache(tmp_path):
    api = FakeApi(fetch_error=NetworkError(code="NETWORK_ERROR", message="offline"))
    connector = FakeConnector()
    session, cache = make_session(tmp_path, api, connector)
    cached = _server_history() + [
        Message(id="3", role="assistant", content="cut o", sealed=False, status="streaming"),
    ]
    cache.save(42, cached)

    history = await session.open_conversation(7, 42)
    assert [m.content for m in history] == ["earlier question", "earlier answer", "cut o"]
    # 缓存里中断的流被封存为 partial，不会被新回合续写
    assert history[-1].sealed is True
    assert history[-1].status == "partial"
    assert not session.is_streaming
    assert session.connection_state in (ConnectionState.CONNECTING, ConnectionState.OPEN)
    await wait_until(lambda: connector.urls == ["wss://example.test/ws/chats/42/"])
    await session.close()


@pytest.mark.asyncio
async def test_empty_rest_history_uses_cache(tmp_path):
    session, cache = make_session(tmp_path, FakeApi(), FakeConnector())
    cache.save(42, _server_history())
    history = await session.open_conversation(7, 42)
    assert [m.id for m in history] == ["1", "2"]
    await session.close()


@pytest.mark.asyncio
async def test_history_load_failed_when_rest_and_cache_fail(tmp_path):
    api = FakeApi(fetch_error=NetworkError(code="NETWORK_ERROR", message="offline"))
    session, _ = make_session(tmp_path, api, FakeConnector())
    with pytest.raises(HistoryLoadFailed) as exc:
        await session.open_conversation(7, 42)
    assert isinstance(exc.value.__cause__, NetworkError)
    assert session.messages == ()
    assert session.conversation_id == "42"


@pytest.mark.asyncio
async def test_server_history_is_written_to_cache(tmp_path):
    server = _server_history()
    api = FakeApi(messages={"42": server})
    session, cache = make_session(tmp_path, api, FakeConnector())
    await session.open_conversation(7, 42)
    assert cache.load(42) == server
    await session.close()


@pytest.mark.asyncio
async def test_delete_active_conversation_resets_session(tmp_path):
    api = FakeApi(messages={"42": _server_history()})
    session, cache = make_session(tmp_path, api, FakeConnector())
    await session.open_conversation(7, 42)
    await session._transport.ensure_open(42)

    await session.delete_conversation(42)
    assert ("delete_chat", "42") in api.calls
    assert cache.load(42) is None
    assert session.conversation_id is None
    assert session.messages == ()
    assert session.connection_state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_delete_error_surfaces_to_caller(tmp_path):
    class FailingDeleteApi(FakeApi):
        async def delete_chat(self, chat_id):
            raise NetworkError(code="NETWORK_ERROR", message="offline")

    session, cache = make_session(tmp_path, FailingDeleteApi(messages={"42": _server_history()}), FakeConnector())
    await session.open_conversation(7, 42)
    with pytest.raises(NetworkError):
        await session.delete_conversation(42)
    assert session.conversation_id == "42"
    assert cache.load(42) is not None
    await session.close()


@pytest.mark.asyncio
async def test_transport_error_mid_stream_marks_reply_partial(tmp_path):
    sock = FakeSocket()
    updates = []
    session, _ = make_session(tmp_path, FakeApi(), FakeConnector(sock), on_update=updates.append)
    await session.open_conversation(7, 42)
    await session.submit("tell me")
    sock.push("Once upon")
    await wait_until(lambda: session.is_streaming)
    sock.push(ConnectionResetError("reset"))
    await wait_until(lambda: session.connection_state is ConnectionState.CLOSED)

    last = session.messages[-1]
    assert last.content == "Once upon"
    assert last.sealed is True
    assert last.status == "partial"
    assert updates and updates[-1] == session.messages


@pytest.mark.asyncio
async def test_submit_during_history_load_keeps_user_message(tmp_path):
    api = FakeApi(messages={"42": _server_history()})
    api.gates["42"] = asyncio.Event()
    connector = FakeConnector()
    session, cache = make_session(tmp_path, api, connector)

    loading = asyncio.create_task(session.open_conversation(7, 42))
    await wait_until(lambda: ("fetch_messages", "42") in api.calls)
    sending = asyncio.create_task(session.submit("typed while loading"))
    await wait_until(lambda: session.pending_text == "typed while loading")
    api.gates["42"].set()
    await loading
    msg = await sending

    assert msg.status == "sent"
    assert [(m.content, m.status) for m in session.messages] == [
        ("earlier question", "sent"),
        ("earlier answer", "complete"),
        ("typed while loading", "sent"),
    ]
    assert [(m.content, m.status) for m in cache.load(42)] == [
        ("earlier question", "sent"),
        ("earlier answer", "complete"),
        ("typed while loading", "sent"),
    ]
    assert [json.loads(s) for s in connector.created[0].sent] == [{"text": "typed while loading"}]
    await session.close()


@pytest.mark.asyncio
async def test_submit_waiting_on_load_is_cancelled_by_switch(tmp_path):
    api = FakeApi(messages={"1": _server_history()})
    api.gates["1"] = asyncio.Event()
    session, cache = make_session(tmp_path, api, FakeConnector())

    loading = asyncio.create_task(session.open_conversation(7, 1))
    await wait_until(lambda: ("fetch_messages", "1") in api.calls)
    sending = asyncio.create_task(session.submit("for A"))
    await wait_until(lambda: session.pending_text == "for A")
    await session.switch_conversation(2)

    with pytest.raises(ConnectFailed) as exc:
        await sending
    assert exc.value.code == "CONNECT_CANCELLED"
    api.gates["1"].set()
    await loading
    assert session.conversation_id == "2"
    assert session.messages == ()
    assert all(m.content != "for A" for m in (cache.load(1) or []))
    await session.close()


@pytest.mark.asyncio
async def test_malformed_server_history_falls_back_to_cache(tmp_path, monkeypatch):
    class Resp:
        status_code = 200
        text = ""
        content = b"{...}"

        def json(self):
            return {"id": 42, "messages": [{"id": 9, "sender": "user", "content": "x", "createdAt": "not-a-date"}]}

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def request(self, method, url, json=None, headers=None):
            return Resp()

    monkeypatch.setattr("httpx.AsyncClient", Client)
    api = ChatApiClient(ChatSettings(api_base_url="https://api.example.test"))
    session, cache = make_session(tmp_path, api, FakeConnector())
    cache.save(42, _server_history())

    history = await session.open_conversation(7, 42)
    assert [m.id for m in history] == ["1", "2"]
    await session.close()
