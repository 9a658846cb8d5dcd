"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于视图层做统一捕获与用户提示（例如“连接失败，请重试”）。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 来自 REST 调用时对应的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、state 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class RestError(BusinessError):
    """REST 协作方调用失败（CRUD、鉴权等）。"""


class NetworkError(RestError):
    """网络层错误，例如连接失败、超时等。"""


class AuthError(RestError):
    """鉴权失败（401），与网络错误区分开，便于上层提示重新登录。"""


class ApiError(RestError):
    """服务端返回非 2xx 时抛出。"""


class RateLimitError(RestError):
    """服务端限流（429），重试由调用方决定。"""


class ConnectFailed(BusinessError):
    """在限定时间内没有收到握手，或等待被会话切换取消。"""


class SendRejected(BusinessError):
    """发送时连接不处于 OPEN 状态，或已有一条消息在发送中。"""


class TransportError(BusinessError):
    """WebSocket 底层错误。"""


class HistoryLoadFailed(BusinessError):
    """REST 与本地缓存都无法提供历史消息。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
