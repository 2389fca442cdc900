"""LLM Core 顶层包。

为基于 agent 的仿真提供统一的多 Provider 对话能力：
OpenAI / Anthropic / Gemini / Ollama 适配、按 agent 隔离的对话历史、
配置就绪校验、同步/异步分发以及受限选择。
"""

from llm_core.api.service import AsyncReply, LLMService, get_default_service

__all__ = ["AsyncReply", "LLMService", "get_default_service"]
