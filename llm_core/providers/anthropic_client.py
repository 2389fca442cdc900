"""Anthropic Claude Provider 适配器。

Messages API 与 OpenAI 的差异：

- 鉴权使用 x-api-key 头，并需要 anthropic-version 头；
- system 提示不放在 messages 里，而是单独的 system 字段；
- max_tokens 为必填；
- 回复是 content 块列表，这里拼接所有 text 块。
"""

from typing import Any, Dict, List, Optional

from llm_core.domain.models import ChatRequest, ChatUsage, ProviderConfig
from llm_core.providers.base import BaseHttpProvider, int_field

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicClient(BaseHttpProvider):
    """Anthropic 提供方客户端实现。"""

    name = "anthropic"

    def _endpoint(self, cfg: ProviderConfig) -> str:
        return f"{cfg.base_url.rstrip('/')}/messages"

    def _headers(self, cfg: ProviderConfig) -> Dict[str, str]:
        return {
            "x-api-key": cfg.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        system_parts: List[str] = []
        messages: List[Dict[str, Any]] = []
        for m in req.messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                messages.append(self._message_to_payload(m))
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": messages,
            "max_tokens": req.config.max_tokens,
            "temperature": req.config.temperature,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def _extract_text(self, data: Dict[str, Any]) -> str:
        blocks = data["content"]
        texts = [b["text"] for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
        if not texts:
            raise KeyError("text")
        return "".join(texts)

    def _finish_reason(self, data: Dict[str, Any]) -> Optional[str]:
        return data.get("stop_reason")

    def _usage(self, data: Dict[str, Any]) -> Optional[ChatUsage]:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        prompt_tokens = int_field(usage, "input_tokens")
        completion_tokens = int_field(usage, "output_tokens")
        return ChatUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
