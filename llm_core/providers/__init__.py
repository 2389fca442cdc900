"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型目录 (registry)。
- 提供各厂商的具体实现 (openai_client、anthropic_client、gemini_client、ollama_client)。
"""

from typing import Dict, Optional, Type

import httpx

from llm_core.config.settings import settings
from llm_core.providers.anthropic_client import AnthropicClient
from llm_core.providers.base import BaseHttpProvider, ProviderClient
from llm_core.providers.gemini_client import GeminiClient
from llm_core.providers.ollama_client import OllamaClient
from llm_core.providers.openai_client import OpenAIClient
from llm_core.providers.registry import ModelCatalog, get_provider_spec

ADAPTERS: Dict[str, Type[BaseHttpProvider]] = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "gemini": GeminiClient,
    "ollama": OllamaClient,
}


def create_provider(
    name: str,
    transport: Optional[httpx.BaseTransport] = None,
    strict: Optional[bool] = None,
    model_catalog: Optional[ModelCatalog] = None,
) -> ProviderClient:
    """根据名称创建 Provider 实例。未知名称抛出 UnknownProvider。"""

    spec = get_provider_spec(name)
    if strict is None:
        strict = settings.strict_parsing
    return ADAPTERS[spec.name](transport=transport, strict=strict, model_catalog=model_catalog)
