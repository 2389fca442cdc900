"""对外 API 服务模块。

提供给宿主（仿真环境）调用的操作集合。所有操作都不会向宿主抛出异常：

- 成功时返回 {"ok": True, ...}；
- 失败时返回 {"ok": False, "error": {"type", "code", "message", ...}}。

软提示（解析降级、选择回退）以 degraded / fallback 字段体现。
"""

import functools
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from llm_core.config.store import ConfigStore
from llm_core.domain.exceptions import BusinessError, ValidationError
from llm_core.domain.history import HistoryStore
from llm_core.domain.models import ChatMessage, ChatResult
from llm_core.engine.choice import ChoiceResolver
from llm_core.engine.deferred import DeferredTask
from llm_core.engine.dispatcher import Dispatcher
from llm_core.engine.templates import Variables
from llm_core.infrastructure.logging.logger import logger
from llm_core.providers.ollama_client import list_installed_models
from llm_core.providers.registry import get_provider_spec

Result = Dict[str, Any]


def _error_result(op: str, e: Exception) -> Result:
    if isinstance(e, BusinessError):
        logger.warning(f"{op} failed: {e.message}", extra={"extra": {"op": op, "code": e.code}})
        return {"ok": False, "error": e.to_dict()}
    logger.exception(f"{op} failed unexpectedly", extra={"extra": {"op": op}})
    return {
        "ok": False,
        "error": {"type": type(e).__name__, "code": "INTERNAL_ERROR", "message": str(e), "http_status": 500},
    }


def guarded(fn: Callable[..., Result]) -> Callable[..., Result]:
    """把异常转换为结构化错误值。"""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> Result:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            return _error_result(fn.__name__, e)

    return wrapper


def _chat_payload(result: ChatResult) -> Result:
    payload: Result = {
        "ok": True,
        "reply": result.text,
        "provider": result.provider,
        "model": result.model,
        "finish_reason": result.finish_reason,
        "degraded": result.degraded is not None,
    }
    if result.usage is not None:
        payload["usage"] = {
            "prompt_tokens": result.usage.prompt_tokens,
            "completion_tokens": result.usage.completion_tokens,
            "total_tokens": result.usage.total_tokens,
        }
    return payload


class AsyncReply:
    """chat_async 返回的句柄，force() 得到与同步 chat 相同结构的结果。"""

    def __init__(self, task: DeferredTask):
        self._task = task

    @property
    def state(self) -> str:
        return self._task.state.value

    def done(self) -> bool:
        return self._task.done()

    @guarded
    def force(self, timeout: Optional[float] = None) -> Result:
        try:
            result = self._task.force(timeout)
        except TimeoutError as e:
            return {
                "ok": False,
                "error": {"type": "TimeoutError", "code": "FORCE_TIMEOUT", "message": str(e), "http_status": 504},
                "state": self.state,
            }
        return _chat_payload(result)


class LLMService:
    """宿主操作入口，组合 ConfigStore / HistoryStore / Dispatcher / ChoiceResolver。"""

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        history: Optional[HistoryStore] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.config = config_store or ConfigStore()
        self.history = history or HistoryStore()
        self.dispatcher = dispatcher or Dispatcher(self.config, self.history)
        self.chooser = ChoiceResolver(self.dispatcher)

    # ---- 对话 ----

    @guarded
    def chat(self, agent_id: Hashable, prompt: str) -> Result:
        return _chat_payload(self.dispatcher.chat_result(agent_id, prompt))

    @guarded
    def chat_async(self, agent_id: Hashable, prompt: str) -> Result:
        task = self.dispatcher.chat_async(agent_id, prompt)
        return {"ok": True, "handle": AsyncReply(task)}

    @guarded
    def chat_with_template(self, agent_id: Hashable, template_path: str, variables: Variables = None) -> Result:
        reply = self.dispatcher.chat_with_template(agent_id, template_path, variables)
        return {"ok": True, "reply": reply}

    @guarded
    def choose(self, agent_id: Hashable, prompt: str, options: Sequence[Any]) -> Result:
        result = self.chooser.choose(agent_id, prompt, options)
        return {
            "ok": True,
            "choice": result.choice,
            "index": result.index,
            "strategy": result.strategy,
            "reply": result.reply,
            "fallback": result.fallback is not None,
        }

    # ---- 历史 ----

    @guarded
    def get_history(self, agent_id: Hashable) -> Result:
        messages = self.history.snapshot(agent_id)
        return {"ok": True, "history": [[m.role, m.content] for m in messages]}

    @guarded
    def set_history(self, agent_id: Hashable, pairs: Iterable[Sequence[str]]) -> Result:
        messages: List[ChatMessage] = []
        for pair in pairs:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValidationError(
                    code="INVALID_HISTORY",
                    message="History entries must be [role, content] pairs",
                )
            role, content = pair
            messages.append(ChatMessage(role=str(role).strip().lower(), content=str(content)))
        self.history.replace(agent_id, messages)
        return {"ok": True, "count": len(messages)}

    @guarded
    def clear_history(self, agent_id: Hashable) -> Result:
        self.history.clear(agent_id)
        return {"ok": True}

    @guarded
    def clear_all(self) -> Result:
        self.history.clear_all()
        return {"ok": True}

    # ---- 配置 ----

    @guarded
    def list_providers(self, ready_only: bool = False) -> Result:
        providers = self.config.list_ready() if ready_only else self.config.list_all()
        return {"ok": True, "providers": providers}

    @guarded
    def provider_status(self, provider: Optional[str] = None) -> Result:
        return {"ok": True, "status": self.config.status(provider).to_dict()}

    @guarded
    def set_provider(self, name: str) -> Result:
        return {"ok": True, "status": self.config.set_provider(name).to_dict()}

    @guarded
    def set_api_key(self, api_key: str, provider: Optional[str] = None) -> Result:
        status = self.config.set_api_key(api_key, provider)
        return {"ok": True, "status": status.to_dict()}

    @guarded
    def set_model(self, model: str) -> Result:
        status = self.config.set_model(model)
        return {"ok": True, "model": self.config.active().model, "status": status.to_dict()}

    @guarded
    def set_base_url(self, base_url: str, provider: Optional[str] = None) -> Result:
        status = self.config.set_base_url(base_url, provider)
        return {"ok": True, "status": status.to_dict()}

    @guarded
    def set_temperature(self, value: Any) -> Result:
        self.config.set_temperature(value)
        return {"ok": True}

    @guarded
    def set_max_tokens(self, value: Any) -> Result:
        self.config.set_max_tokens(value)
        return {"ok": True}

    @guarded
    def set_timeout(self, value: Any) -> Result:
        self.config.set_timeout(value)
        return {"ok": True}

    @guarded
    def load_config(self, path: str) -> Result:
        return {"ok": True, "status": self.config.load_config_file(path).to_dict()}

    @guarded
    def config_summary(self) -> Result:
        return {"ok": True, "summary": self.config.summary()}

    @guarded
    def setup_help(self, provider: Optional[str] = None) -> Result:
        return {"ok": True, "help": self.config.setup_help(provider)}

    # ---- 模型目录 ----

    @guarded
    def list_models(self, provider: Optional[str] = None) -> Result:
        name = get_provider_spec(provider).name if provider else self.config.active().provider
        return {"ok": True, "provider": name, "models": self.config.catalog.supported_models(name)}

    @guarded
    def format_models(self) -> Result:
        cfg = self.config.active()
        return {"ok": True, "text": self.config.catalog.format_model_list(cfg.provider, cfg.model)}

    @guarded
    def load_model_override(self, model_dir: str) -> Result:
        message = self.config.catalog.load_override(model_dir)
        return {"ok": True, "loaded": message is not None, "message": message}

    @guarded
    def installed_ollama_models(self) -> Result:
        return {"ok": True, "models": list_installed_models(self.config.base_url("ollama"))}

    def shutdown(self) -> None:
        self.dispatcher.shutdown()


_service: Optional[LLMService] = None


def get_default_service() -> LLMService:
    """获取默认的 LLMService 实例（单例）。"""

    global _service
    if _service is None:
        _service = LLMService()
    return _service
