"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于调用方统一捕获。客户端不做任何自动重试，错误原样交给调用方。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "API_ERROR"）。
        message: 用户可读错误信息。
        http_status: HTTP 状态码或服务端返回的错误码，默认 400。
        status_text: 状态描述（HTTP reason 或服务端错误信息）。
        extra: 其他补充字段（例如 signal、body 等）。
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        status_text: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.status_text = status_text
        self.extra = extra
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return self.http_status


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、连接被对端中断等。"""


class ApiError(BusinessError):
    """服务端返回非 2xx 状态时抛出。"""


class RateLimitError(ApiError):
    """服务端返回 429。客户端不重试，由调用方决定退避策略。"""


class ProtocolError(BusinessError):
    """2xx 响应但 JSON 结构不符合预期（缺少 choices、流未以 [DONE] 结束等）。"""


class ServiceError(BusinessError):
    """服务端以正常内容的形式返回的错误信封（invalid_request_error）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败，在发起任何网络请求之前抛出。"""


class ChatTimeoutError(BusinessError):
    """内部计时器触发的超时，与调用方主动取消区分开。"""


class AbortedError(BusinessError):
    """调用方通过 AbortSignal 主动取消。"""


class UnsupportedTransportError(BusinessError):
    """响应体既不支持拉取式读取也不支持推送式读取。"""
