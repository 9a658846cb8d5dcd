"""WebSocket 传输层：线协议编解码 (protocol) 与会话级连接 (connection)。"""

from .connection import TransportConnection

__all__ = ["TransportConnection"]
