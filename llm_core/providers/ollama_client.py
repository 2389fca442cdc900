"""Ollama（本地模型）Provider 适配器。

- 对话：POST {base_url}/api/chat，stream=false，
  生成参数放在 options（temperature / num_predict）；
  回复文本取自 message.content。
- 探测：GET {base_url}/api/tags，2xx 视为服务可达。
  同一个接口也返回本机已安装的模型列表。

Ollama 不需要 API Key。
"""

from typing import Any, Dict, List, Optional

import httpx

from llm_core.domain.models import ChatRequest, ChatUsage, ProviderConfig
from llm_core.infrastructure.logging.logger import logger
from llm_core.providers.base import BaseHttpProvider, int_field


def _tags_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/tags"


def check_server(base_url: str, timeout: float = 2.0, transport: Optional[httpx.BaseTransport] = None) -> bool:
    """探测本地 Ollama 服务是否可达。任何网络错误都视为不可达，不抛异常。"""

    try:
        with httpx.Client(timeout=timeout, trust_env=False, transport=transport) as client:
            resp = client.get(_tags_url(base_url))
    except httpx.HTTPError as e:
        logger.info("Ollama server not reachable", extra={"extra": {"base_url": base_url, "error": str(e)}})
        return False
    return 200 <= resp.status_code < 300


def list_installed_models(
    base_url: str, timeout: float = 2.0, transport: Optional[httpx.BaseTransport] = None
) -> List[str]:
    """返回本机已安装的模型名称；服务不可达或响应异常时返回空列表。"""

    try:
        with httpx.Client(timeout=timeout, trust_env=False, transport=transport) as client:
            resp = client.get(_tags_url(base_url))
        if not 200 <= resp.status_code < 300:
            return []
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.info("Cannot list Ollama models", extra={"extra": {"base_url": base_url, "error": str(e)}})
        return []
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return []
    return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]


class OllamaClient(BaseHttpProvider):
    """Ollama 提供方客户端实现。"""

    name = "ollama"

    def _endpoint(self, cfg: ProviderConfig) -> str:
        return f"{cfg.base_url.rstrip('/')}/api/chat"

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        return {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": False,
            "options": {
                "temperature": req.config.temperature,
                "num_predict": req.config.max_tokens,
            },
        }

    def _extract_text(self, data: Dict[str, Any]) -> str:
        return data["message"]["content"]

    def _finish_reason(self, data: Dict[str, Any]) -> Optional[str]:
        return data.get("done_reason")

    def _usage(self, data: Dict[str, Any]) -> Optional[ChatUsage]:
        if "prompt_eval_count" not in data and "eval_count" not in data:
            return None
        prompt_tokens = int_field(data, "prompt_eval_count")
        completion_tokens = int_field(data, "eval_count")
        return ChatUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
