"""Provider 与模型目录。

本模块集中维护：

- PROVIDER_REGISTRY: 支持的 Provider（封闭集合）及其默认地址、默认模型、
  是否需要 API Key、获取 Key 的地址等静态信息。
- ModelCatalog: 每个 Provider 的可用模型列表（静态目录，不实时查询）。
  可以通过目录下的 models-override.yaml 覆盖某个 Provider 的整张列表，
  被覆盖的 Provider 会被标记为 custom。

新增 Provider 时只需要在这里加一条 ProviderSpec，并在工厂中注册适配器。
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set, Tuple

import yaml

from llm_core.config.settings import settings
from llm_core.domain.exceptions import ConfigError, UnknownProvider
from llm_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class ProviderSpec:
    """某个 Provider 的静态描述。"""

    name: str
    display_name: str
    default_base_url: str
    default_model: str
    models: Tuple[str, ...]
    requires_api_key: bool
    key_url: Optional[str] = None


OPENAI_SPEC = ProviderSpec(
    name="openai",
    display_name="OpenAI",
    default_base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
    models=("gpt-4o-mini", "gpt-4o", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"),
    requires_api_key=True,
    key_url="https://platform.openai.com/api-keys",
)

ANTHROPIC_SPEC = ProviderSpec(
    name="anthropic",
    display_name="Anthropic Claude",
    default_base_url="https://api.anthropic.com/v1",
    default_model="claude-3-5-haiku-latest",
    models=(
        "claude-3-5-haiku-latest",
        "claude-3-5-haiku-20241022",
        "claude-3-5-sonnet-latest",
        "claude-3-5-sonnet-20241022",
        "claude-3-opus-20240229",
    ),
    requires_api_key=True,
    key_url="https://console.anthropic.com/settings/keys",
)

GEMINI_SPEC = ProviderSpec(
    name="gemini",
    display_name="Google Gemini",
    default_base_url="https://generativelanguage.googleapis.com/v1beta",
    default_model="gemini-1.5-flash",
    models=("gemini-1.5-flash", "gemini-1.5-pro", "gemini-2.0-flash-exp", "gemini-1.0-pro"),
    requires_api_key=True,
    key_url="https://aistudio.google.com/app/apikey",
)

OLLAMA_SPEC = ProviderSpec(
    name="ollama",
    display_name="Ollama (local)",
    default_base_url="http://localhost:11434",
    default_model="llama3.2",
    models=(
        "llama3.2",
        "llama3.1",
        "llama3",
        "mistral",
        "mixtral",
        "phi4",
        "phi3",
        "gemma",
        "qwen2",
        "codellama",
        "deepseek-coder",
    ),
    requires_api_key=False,
)


PROVIDER_REGISTRY: Mapping[str, ProviderSpec] = {
    "openai": OPENAI_SPEC,
    "anthropic": ANTHROPIC_SPEC,
    "gemini": GEMINI_SPEC,
    "ollama": OLLAMA_SPEC,
}

SUPPORTED_PROVIDERS: Tuple[str, ...] = tuple(PROVIDER_REGISTRY)
CLOUD_PROVIDERS: Tuple[str, ...] = tuple(n for n, s in PROVIDER_REGISTRY.items() if s.requires_api_key)

OVERRIDE_FILENAMES = ("models-override.yaml", "models-override.yml")


def normalize_provider_name(name: str) -> str:
    return (name or "").strip().lower()


def get_provider_spec(name: str) -> ProviderSpec:
    """根据名称获取 ProviderSpec，名称不区分大小写。"""

    key = normalize_provider_name(name)
    spec = PROVIDER_REGISTRY.get(key)
    if spec is None:
        raise UnknownProvider(
            code="UNKNOWN_PROVIDER",
            message=f"Unknown provider: {name!r}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
            provider=name,
        )
    return spec


def parse_model_config(content: str) -> Dict[str, List[str]]:
    """解析模型目录 YAML。

    期望结构::

        openai:
          - gpt-4o
          - gpt-4o-mini
        ollama:
          - llama3.2
    """

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(code="MODEL_CONFIG_PARSE_ERROR", message=f"Invalid model config YAML: {e}")
    if not isinstance(data, dict):
        raise ConfigError(code="MODEL_CONFIG_PARSE_ERROR", message="Model config must be a mapping of provider -> models")

    result: Dict[str, List[str]] = {}
    for raw_name, models in data.items():
        name = normalize_provider_name(str(raw_name))
        if name not in PROVIDER_REGISTRY:
            logger.warning("Ignoring models for unknown provider", extra={"extra": {"provider": raw_name}})
            continue
        if not isinstance(models, list) or not all(isinstance(m, (str, int, float)) for m in models):
            raise ConfigError(
                code="MODEL_CONFIG_PARSE_ERROR",
                message=f"Models for provider {name!r} must be a list of names",
            )
        seen: Set[str] = set()
        ordered: List[str] = []
        for m in models:
            model = str(m).strip()
            if model and model not in seen:
                seen.add(model)
                ordered.append(model)
        result[name] = ordered
    return result


class ModelCatalog:
    """各 Provider 的可用模型目录。线程安全。"""

    def __init__(self, override_dir: Optional[str] = None):
        self._lock = threading.Lock()
        self._models: Dict[str, List[str]] = {}
        self._custom: Set[str] = set()
        self.reset()
        if override_dir:
            self.load_override(override_dir)

    def reset(self) -> None:
        """恢复到内置目录，丢弃已加载的覆盖配置。"""

        with self._lock:
            self._models = {name: list(spec.models) for name, spec in PROVIDER_REGISTRY.items()}
            self._custom = set()

    def load_override(self, model_dir: str) -> Optional[str]:
        """从目录加载 models-override.yaml，覆盖对应 Provider 的整张列表。

        Returns:
            成功加载时返回提示信息（含自定义模型数量），文件不存在时返回 None。
        """

        path = None
        for fname in OVERRIDE_FILENAMES:
            candidate = Path(model_dir).expanduser() / fname
            if candidate.is_file():
                path = candidate
                break
        if path is None:
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(code="MODEL_CONFIG_READ_ERROR", message=f"Cannot read {path}: {e}")
        override = parse_model_config(content)
        if not override:
            return None
        with self._lock:
            self._models.update({name: list(models) for name, models in override.items()})
            self._custom.update(override)
        count = sum(len(models) for models in override.values())
        message = f"Loaded {count} custom models from override config"
        logger.info(message, extra={"extra": {"path": str(path), "providers": sorted(override)}})
        return message

    def supported_models(self, provider: str) -> List[str]:
        key = normalize_provider_name(provider)
        with self._lock:
            return list(self._models.get(key, ()))

    def default_model(self, provider: str) -> str:
        # 默认模型固定，不随覆盖配置变化
        return get_provider_spec(provider).default_model

    def is_valid_model(self, provider: str, model: str) -> bool:
        return model in self.supported_models(provider)

    def is_custom(self, provider: str) -> bool:
        with self._lock:
            return normalize_provider_name(provider) in self._custom

    def model_list_for_display(self, provider: str) -> str:
        models = self.supported_models(provider)
        if not models:
            return "No models available"
        if len(models) <= 10:
            return ", ".join(models)
        return f"{', '.join(models[:10])}, ... ({len(models)} total)"

    def format_model_list(self, active_provider: str, active_model: str) -> str:
        """格式化所有 Provider 的模型列表，标出当前生效模型与自定义模型。"""

        active = normalize_provider_name(active_provider)
        lines = ["=== Available Models ==="]
        for name in SUPPORTED_PROVIDERS:
            lines.append("")
            lines.append(f"--- {name} ---")
            custom = self.is_custom(name)
            for model in self.supported_models(name):
                markers = ""
                if name == active and model == active_model:
                    markers += " [ACTIVE]"
                if custom:
                    markers += " [custom]"
                lines.append(f"  {model}{markers}")
        lines.append("")
        lines.append(f"Currently using: {active} / {active_model}")
        return "\n".join(lines) + "\n"


def _build_default_catalog() -> ModelCatalog:
    cat = ModelCatalog()
    if settings.models_override_dir:
        try:
            cat.load_override(settings.models_override_dir)
        except ConfigError as e:
            logger.warning("Failed to load model override", extra={"extra": {"error": e.message}})
    return cat


catalog = _build_default_catalog()
