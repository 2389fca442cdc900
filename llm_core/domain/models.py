"""统一的对话与结果数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），创建后不可变。
- ProviderConfig: 某一时刻生效的 Provider 配置快照。
- ProviderStatus: 按需计算的 Provider 就绪状态。
- ChatRequest: 发给 Provider 适配器的完整请求（历史快照 + 新 prompt + 生成参数）。
- ChatResult: 从 Provider 解析后的统一响应结果。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from llm_core.domain.exceptions import BusinessError, ConfigError, ParseDegraded, ValidationError


# LLM 消息角色类型（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]
ROLES: Tuple[str, ...] = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息。

    - role: 消息角色，system/user/assistant 之一。
    - content: 纯文本内容。
    """

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValidationError(
                code="INVALID_ROLE",
                message=f"Unknown message role {self.role!r}, expected one of {', '.join(ROLES)}",
            )
        if not isinstance(self.content, str):
            object.__setattr__(self, "content", str(self.content))

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role="assistant", content=content)


@dataclass(frozen=True)
class ProviderConfig:
    """一次调用使用的 Provider 配置快照。

    ConfigStore 在分发时生成该对象，之后对配置的修改不会影响已经
    捕获此快照的调用。api_key 不参与 repr，避免意外写入日志。
    """

    provider: str
    model: str
    base_url: str
    api_key: Optional[str] = field(default=None, repr=False)
    temperature: float = 0.7
    max_tokens: int = 1000
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ConfigError(
                code="INVALID_TEMPERATURE",
                message=f"temperature must be within [0, 2], got {self.temperature}",
            )
        if int(self.max_tokens) < 1:
            raise ConfigError(
                code="INVALID_MAX_TOKENS",
                message=f"max_tokens must be a positive integer, got {self.max_tokens}",
            )
        if float(self.timeout_seconds) <= 0:
            raise ConfigError(
                code="INVALID_TIMEOUT",
                message=f"timeout_seconds must be positive, got {self.timeout_seconds}",
            )

    @property
    def has_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


@dataclass(frozen=True)
class ProviderStatus:
    """Provider 就绪状态（派生值，不缓存）。

    - ready: 是否可以接受调用。
    - has_key: 是否配置了 API Key（本地 Provider 恒为 True）。
    - reachable: 云端 Provider 不探测网络，等同于 has_key；
      Ollama 需要实际探测本地服务。
    - hint: 未就绪时的修复建议。
    """

    provider: str
    ready: bool
    has_key: bool
    reachable: bool
    base_url: str
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "ready": self.ready,
            "has_key": self.has_key,
            "reachable": self.reachable,
            "base_url": self.base_url,
            "hint": self.hint,
        }


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求，每次调用重新构造。

    Dispatcher 从历史快照、新 prompt 和分发时捕获的配置构造本对象，
    Provider 适配层负责把它转换成各家 API 的 JSON 请求体。
    """

    history: Tuple[ChatMessage, ...]
    prompt: str
    config: ProviderConfig
    # 仅对本次调用生效的 system 提示（例如模板），不会写入历史
    system_prompt: Optional[str] = None

    @property
    def messages(self) -> List[ChatMessage]:
        msgs: List[ChatMessage] = []
        if self.system_prompt:
            msgs.append(ChatMessage.system(self.system_prompt))
        msgs.extend(self.history)
        msgs.append(ChatMessage.user(self.prompt))
        return msgs

    @property
    def model(self) -> str:
        return self.config.model


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次对话调用的最终结果。

    - text: 解析出的回复文本；解析失败时为原始响应体。
    - provider / model: 实际使用的 Provider 与模型。
    - finish_reason: 厂商返回的结束原因（如果有）。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试。
    - error: 调用失败时的错误（网络错误、非 2xx、strict 模式下的解析失败）。
    - degraded: 宽松解析模式下的软提示。
    """

    text: str
    provider: str
    model: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[Dict[str, Any]] = None
    error: Optional[BusinessError] = None
    degraded: Optional[ParseDegraded] = None

    @property
    def ok(self) -> bool:
        return self.error is None
