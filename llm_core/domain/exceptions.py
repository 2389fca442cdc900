"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层统一捕获并转换为结构化的错误值返回给宿主环境。

分为两类：
- 硬错误：ConfigError / NotReady / NetworkError 及其子类，调用方需要处理。
- 软提示：ParseDegraded / ChoiceFallback，结果仍然可用，
  只是挂在结果对象上供调用方观察质量退化。
"""

from typing import Any, Dict


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "UNKNOWN_PROVIDER"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、hint 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可直接返回给宿主环境的结构化错误值。"""

        payload: Dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "http_status": self.http_status,
        }
        payload.update(self.extra)
        return payload


class ConfigError(BusinessError):
    """配置错误：未知模型、配置行格式错误、数值越界等。"""


class UnknownProvider(ConfigError):
    """Provider 名称不在支持列表中。"""


class ValidationError(BusinessError):
    """调用参数校验失败（例如 choose 的选项少于 2 个）。"""


class NotReady(BusinessError):
    """当前 Provider 未就绪：缺少 API Key 或本地服务不可达。

    extra["hint"] 中携带针对该 Provider 的修复建议。
    """


class NetworkError(BusinessError):
    """网络层错误，例如连接失败。"""


class ApiError(NetworkError):
    """第三方 API 返回非 2xx 时使用，http_status 为实际状态码。"""


class RateLimitError(ApiError):
    """Provider 限流（429）。不做自动重试。"""


class RequestTimeout(NetworkError):
    """单次请求超过 timeout_seconds。"""


class ParseDegraded(BusinessError):
    """响应体不符合预期结构，已用原始文本代替。

    默认作为软提示挂在 ChatResult.degraded 上；strict 模式下作为 error。
    """


class ChoiceFallback(BusinessError):
    """choose 无法可靠匹配模型回复，已回退到第一个选项。"""
