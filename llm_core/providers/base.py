"""Provider 抽象接口与 HTTP 适配器基类。

上层 Dispatcher 不直接依赖具体厂商的 HTTP API，而是依赖 ProviderClient 协议：

- 每个厂商实现一个适配器（如 OpenAIClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。

BaseHttpProvider 封装了各家共用的部分：发请求、超时与非 2xx 处理、
宽松/严格两种解析模式。子类只需实现请求体构造和响应解析。
适配器不读写历史，HTTP transport 可注入，便于用假 transport 测试。
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx

from llm_core.domain.exceptions import (
    ApiError,
    BusinessError,
    NetworkError,
    ParseDegraded,
    RateLimitError,
    RequestTimeout,
)
from llm_core.domain.models import ChatMessage, ChatRequest, ChatResult, ChatUsage, ProviderConfig
from llm_core.infrastructure.logging.logger import logger
from llm_core.providers.registry import ModelCatalog, catalog as default_catalog

# 错误信息中保留的响应体长度
ERROR_BODY_LIMIT = 500


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - list_models(): 静态模型目录（有序，默认模型在前）。
    - send(req): 执行一次非流式对话调用，返回统一的 ChatResult，错误放在 result.error。
    """

    name: str

    def list_models(self) -> List[str]:
        ...

    def send(self, req: ChatRequest) -> ChatResult:
        ...


class BaseHttpProvider:
    """基于 httpx 的 Provider 适配器基类。"""

    name = ""

    def __init__(
        self,
        transport: Optional[httpx.BaseTransport] = None,
        strict: bool = False,
        model_catalog: Optional[ModelCatalog] = None,
    ):
        self._transport = transport
        self._strict = strict
        self._catalog = model_catalog or default_catalog

    def list_models(self) -> List[str]:
        return self._catalog.supported_models(self.name)

    def send(self, req: ChatRequest) -> ChatResult:
        """执行一次对话调用。

        步骤：
        1. 构造厂商请求体与请求头。
        2. 发出一次 HTTP 请求（不重试），超时取自请求捕获的配置。
        3. 网络错误/超时/非 2xx 转为 result.error。
        4. 解析响应；结构不符时退回原始文本并标记 degraded。
        """

        cfg = req.config
        payload = self._build_payload(req)
        try:
            with httpx.Client(timeout=cfg.timeout_seconds, trust_env=False, transport=self._transport) as client:
                resp = client.post(self._endpoint(cfg), json=payload, headers=self._headers(cfg))
        except httpx.TimeoutException:
            return self._failed(
                req,
                RequestTimeout(
                    code="TIMEOUT",
                    message=f"{self.name} request timed out after {cfg.timeout_seconds:g}s",
                    http_status=504,
                    provider=self.name,
                ),
            )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接被拒绝等
            return self._failed(
                req,
                NetworkError(
                    code="NETWORK_ERROR",
                    message=f"{self.name} connection failed: {e}",
                    http_status=503,
                    provider=self.name,
                ),
            )
        if resp.status_code == 429:
            return self._failed(
                req,
                RateLimitError(
                    code="RATE_LIMIT",
                    message=f"{self.name} rate limit exceeded",
                    http_status=429,
                    provider=self.name,
                ),
            )
        if not 200 <= resp.status_code < 300:
            return self._failed(
                req,
                ApiError(
                    code="API_ERROR",
                    message=f"{self.name} returned HTTP {resp.status_code}: {resp.text[:ERROR_BODY_LIMIT]}",
                    http_status=resp.status_code,
                    provider=self.name,
                ),
            )
        return self._parse(resp, req)

    # ---- 子类实现 ----

    def _endpoint(self, cfg: ProviderConfig) -> str:
        raise NotImplementedError

    def _headers(self, cfg: ProviderConfig) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def _extract_text(self, data: Dict[str, Any]) -> str:
        """从响应 JSON 中取出回复文本；结构不符时抛出 KeyError/IndexError/TypeError。"""

        raise NotImplementedError

    def _finish_reason(self, data: Dict[str, Any]) -> Optional[str]:
        return None

    def _usage(self, data: Dict[str, Any]) -> Optional[ChatUsage]:
        return None

    # ---- 辅助方法 ----

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}

    def _parse(self, resp: httpx.Response, req: ChatRequest) -> ChatResult:
        body = resp.text
        try:
            data = resp.json()
            if not isinstance(data, dict):
                raise TypeError("response body is not a JSON object")
            text = self._extract_text(data)
            if not isinstance(text, str):
                raise TypeError("response text is not a string")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            notice = ParseDegraded(
                code="PARSE_DEGRADED",
                message=f"Unexpected {self.name} response shape: {e!r}",
                http_status=resp.status_code,
                provider=self.name,
            )
            logger.warning(
                "Provider response did not match expected shape",
                extra={"extra": {"provider": self.name, "model": req.model, "strict": self._strict, "error": str(e)}},
            )
            if self._strict:
                return ChatResult(text="", provider=self.name, model=req.model, error=notice)
            return ChatResult(text=body, provider=self.name, model=req.model, degraded=notice)
        return ChatResult(
            text=text,
            provider=self.name,
            model=req.model,
            finish_reason=self._finish_reason(data),
            usage=self._usage(data),
            raw=data,
        )

    def _failed(self, req: ChatRequest, error: BusinessError) -> ChatResult:
        logger.error(
            "Provider call failed",
            extra={"extra": {"provider": self.name, "model": req.model, "code": error.code, "http_status": error.http_status}},
        )
        return ChatResult(text="", provider=self.name, model=req.model, error=error)


def int_field(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    return value if isinstance(value, int) else 0
