"""Google Gemini Provider 适配器。

generateContent 接口::

    POST {base_url}/models/{model}:generateContent
    x-goog-api-key: <api_key>

- 角色映射：assistant -> model，user -> user；
- system 提示放在 systemInstruction；
- 生成参数放在 generationConfig（temperature / maxOutputTokens）；
- 回复文本取自 candidates[0].content.parts 中的 text。
"""

from typing import Any, Dict, List, Optional

from llm_core.domain.models import ChatRequest, ChatUsage, ProviderConfig
from llm_core.providers.base import BaseHttpProvider, int_field

ROLE_MAP = {"user": "user", "assistant": "model"}


class GeminiClient(BaseHttpProvider):
    """Gemini 提供方客户端实现。"""

    name = "gemini"

    def _endpoint(self, cfg: ProviderConfig) -> str:
        return f"{cfg.base_url.rstrip('/')}/models/{cfg.model}:generateContent"

    def _headers(self, cfg: ProviderConfig) -> Dict[str, str]:
        # Key 放在请求头而不是 URL，避免出现在日志或错误信息中
        return {"x-goog-api-key": cfg.api_key or "", "Content-Type": "application/json"}

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        system_parts: List[str] = []
        contents: List[Dict[str, Any]] = []
        for m in req.messages:
            if m.role == "system":
                system_parts.append(m.content)
                continue
            contents.append({"role": ROLE_MAP[m.role], "parts": [{"text": m.content}]})
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": req.config.temperature,
                "maxOutputTokens": req.config.max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return payload

    def _extract_text(self, data: Dict[str, Any]) -> str:
        parts = data["candidates"][0]["content"]["parts"]
        texts = [p["text"] for p in parts if isinstance(p, dict) and "text" in p]
        if not texts:
            raise KeyError("text")
        return "".join(texts)

    def _finish_reason(self, data: Dict[str, Any]) -> Optional[str]:
        candidates = data.get("candidates")
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            return candidates[0].get("finishReason")
        return None

    def _usage(self, data: Dict[str, Any]) -> Optional[ChatUsage]:
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            return None
        return ChatUsage(
            prompt_tokens=int_field(usage, "promptTokenCount"),
            completion_tokens=int_field(usage, "candidatesTokenCount"),
            total_tokens=int_field(usage, "totalTokenCount"),
        )
