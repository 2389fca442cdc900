"""OpenAI Provider 适配器。

请求格式（Chat Completions）::

    POST {base_url}/chat/completions
    Authorization: Bearer <api_key>
    {"model": ..., "messages": [...], "temperature": ..., "max_tokens": ...}

回复文本取自 choices[0].message.content。
base_url 可以指向任何兼容 OpenAI 协议的服务。
"""

from typing import Any, Dict, Optional

from llm_core.domain.models import ChatRequest, ChatUsage, ProviderConfig
from llm_core.providers.base import BaseHttpProvider, int_field


class OpenAIClient(BaseHttpProvider):
    """OpenAI 提供方客户端实现。"""

    name = "openai"

    def _endpoint(self, cfg: ProviderConfig) -> str:
        return f"{cfg.base_url.rstrip('/')}/chat/completions"

    def _headers(self, cfg: ProviderConfig) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {cfg.api_key or ''}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        return {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.config.temperature,
            "max_tokens": req.config.max_tokens,
        }

    def _extract_text(self, data: Dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"]

    def _finish_reason(self, data: Dict[str, Any]) -> Optional[str]:
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            return choices[0].get("finish_reason")
        return None

    def _usage(self, data: Dict[str, Any]) -> Optional[ChatUsage]:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        return ChatUsage(
            prompt_tokens=int_field(usage, "prompt_tokens"),
            completion_tokens=int_field(usage, "completion_tokens"),
            total_tokens=int_field(usage, "total_tokens"),
        )
