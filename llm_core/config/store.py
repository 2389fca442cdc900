"""当前生效配置与就绪校验。

ConfigStore 是进程内可变的配置对象，显式传给 Dispatcher 使用：

- 同一时刻只有一个生效 Provider（以及模型、温度等生成参数）；
- 各 Provider 的 API Key / base_url 分别保存，可以同时预置多家凭据；
- 每次分发调用都会拿到一份不可变的 ProviderConfig 快照，
  之后的配置修改不会影响已经在途的调用。

就绪规则：
- 云端 Provider（OpenAI/Anthropic/Gemini）只看是否有 Key，不做网络探测；
- Ollama 不需要 Key，需要实际探测本地服务是否可达。
"""

import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from llm_core.config.loader import load_config_file
from llm_core.config.settings import settings
from llm_core.domain.exceptions import ConfigError
from llm_core.domain.models import ProviderConfig, ProviderStatus
from llm_core.infrastructure.logging.logger import logger
from llm_core.providers.ollama_client import check_server
from llm_core.providers.registry import (
    CLOUD_PROVIDERS,
    SUPPORTED_PROVIDERS,
    ModelCatalog,
    ProviderSpec,
    catalog as default_catalog,
    get_provider_spec,
    normalize_provider_name,
)

# (base_url, timeout) -> 是否可达
ReachabilityProbe = Callable[[str, float], bool]

MASK_PREFIX_LEN = 4

GLOBAL_KEYS = ("provider", "model", "api_key", "base_url", "temperature", "max_tokens", "timeout_seconds")


@dataclass
class _Credentials:
    api_key: Optional[str]
    base_url: str


@dataclass
class _State:
    provider: str
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    credentials: Dict[str, _Credentials] = field(default_factory=dict)

    def copy(self) -> "_State":
        return replace(self, credentials={k: replace(v) for k, v in self.credentials.items()})


def mask_secret(value: Optional[str]) -> str:
    """只保留固定长度前缀，绝不输出完整密钥。"""

    if not value:
        return "(not set)"
    if len(value) <= 2 * MASK_PREFIX_LEN:
        return "***"
    return value[:MASK_PREFIX_LEN] + "..."


def _parse_temperature(value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ConfigError(code="INVALID_TEMPERATURE", message=f"temperature must be a number, got {value!r}")
    if not 0.0 <= v <= 2.0:
        raise ConfigError(code="INVALID_TEMPERATURE", message=f"temperature must be within [0, 2], got {v}")
    return v


def _parse_max_tokens(value) -> int:
    try:
        v = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(code="INVALID_MAX_TOKENS", message=f"max_tokens must be an integer, got {value!r}")
    if v < 1:
        raise ConfigError(code="INVALID_MAX_TOKENS", message=f"max_tokens must be positive, got {v}")
    return v


def _parse_timeout(value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ConfigError(code="INVALID_TIMEOUT", message=f"timeout_seconds must be a number, got {value!r}")
    if v <= 0:
        raise ConfigError(code="INVALID_TIMEOUT", message=f"timeout_seconds must be positive, got {v}")
    return v


def _parse_base_url(value: str) -> str:
    url = (value or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ConfigError(code="INVALID_BASE_URL", message=f"base_url must start with http:// or https://, got {value!r}")
    return url.rstrip("/")


class ConfigStore:
    """进程级的生效配置。所有方法线程安全。"""

    def __init__(
        self,
        cfg=settings,
        model_catalog: Optional[ModelCatalog] = None,
        probe: Optional[ReachabilityProbe] = None,
    ):
        self._settings = cfg
        self._catalog = model_catalog or default_catalog
        self._probe = probe or check_server
        self._probe_timeout = float(getattr(cfg, "ollama_probe_timeout", 2.0))
        self._allow_unlisted = bool(getattr(cfg, "allow_unlisted_models", False))
        self._lock = threading.RLock()
        # provider -> (探测时的 base_url, 是否可达)
        self._reachable: Dict[str, Tuple[str, bool]] = {}
        self._state = self._initial_state()

    # ---- 初始化 ----

    def _initial_state(self) -> _State:
        provider = normalize_provider_name(getattr(self._settings, "default_provider", "openai"))
        if provider not in SUPPORTED_PROVIDERS:
            logger.warning(
                "Unknown default provider, falling back to openai",
                extra={"extra": {"provider": provider}},
            )
            provider = "openai"
        credentials: Dict[str, _Credentials] = {}
        for name in SUPPORTED_PROVIDERS:
            spec = get_provider_spec(name)
            key = getattr(self._settings, f"{name}_api_key", None) if spec.requires_api_key else None
            base = getattr(self._settings, f"{name}_base_url", None) or spec.default_base_url
            credentials[name] = _Credentials(api_key=key or None, base_url=base.rstrip("/"))
        return _State(
            provider=provider,
            model=getattr(self._settings, "default_model", None) or self._catalog.default_model(provider),
            temperature=float(getattr(self._settings, "temperature", 0.7)),
            max_tokens=int(getattr(self._settings, "max_tokens", 1000)),
            timeout_seconds=float(getattr(self._settings, "timeout_seconds", 30.0)),
            credentials=credentials,
        )

    # ---- 修改配置 ----

    def set_provider(self, name: str) -> ProviderStatus:
        """切换生效 Provider，并立即（同步）计算其就绪状态。"""

        spec = get_provider_spec(name)
        with self._lock:
            st = self._state
            st.provider = spec.name
            if not self._catalog.is_valid_model(spec.name, st.model):
                st.model = self._catalog.default_model(spec.name)
        status = self.status(spec.name)
        self._report(status, "set_provider")
        return status

    def set_api_key(self, api_key: str, provider: Optional[str] = None) -> ProviderStatus:
        with self._lock:
            name = self._resolve(provider)
            self._state.credentials[name].api_key = (api_key or "").strip() or None
        logger.info("API key updated", extra={"extra": {"provider": name, "has_key": bool(api_key)}})
        return self._check_key(name)

    def set_model(self, model: str) -> ProviderStatus:
        model = (model or "").strip()
        if not model:
            raise ConfigError(code="EMPTY_MODEL", message="Model name cannot be empty")
        with self._lock:
            provider = self._state.provider
            self._validate_model(provider, model)
            self._state.model = model
        logger.info("Model updated", extra={"extra": {"provider": provider, "model": model}})
        return self._check_key(provider)

    def set_base_url(self, base_url: str, provider: Optional[str] = None) -> ProviderStatus:
        url = _parse_base_url(base_url)
        with self._lock:
            name = self._resolve(provider)
            self._state.credentials[name].base_url = url
            self._reachable.pop(name, None)
        logger.info("Base URL updated", extra={"extra": {"provider": name, "base_url": url}})
        return self._check_key(name)

    def set_temperature(self, value) -> None:
        v = _parse_temperature(value)
        with self._lock:
            self._state.temperature = v

    def set_max_tokens(self, value) -> None:
        v = _parse_max_tokens(value)
        with self._lock:
            self._state.max_tokens = v

    def set_timeout(self, value) -> None:
        v = _parse_timeout(value)
        with self._lock:
            self._state.timeout_seconds = v

    def load_config(self, records: Mapping[str, str]) -> ProviderStatus:
        """批量应用配置记录，然后做完整的就绪校验。

        未识别的 key 会被忽略；任一值非法时抛出 ConfigError，且原配置保持不变。
        """

        with self._lock:
            new_state = self._state.copy()
            self._apply_records(new_state, records)
            self._state = new_state
            self._reachable.clear()
        status = self.status()
        self._report(status, "load_config")
        return status

    def load_config_file(self, path: str) -> ProviderStatus:
        records = load_config_file(path)
        logger.info("Loaded config file", extra={"extra": {"path": str(path), "keys": len(records)}})
        return self.load_config(records)

    def _apply_records(self, st: _State, records: Mapping[str, str]) -> None:
        values = {str(k).strip().lower(): ("" if v is None else str(v).strip()) for k, v in records.items()}

        # 顺序：provider -> 分 Provider 的 key -> 全局 key（作用于新的生效 Provider）-> model -> 数值
        if values.get("provider"):
            st.provider = get_provider_spec(values["provider"]).name

        recognized = set(GLOBAL_KEYS)
        for name in SUPPORTED_PROVIDERS:
            base_key = f"{name}_base_url"
            recognized.add(base_key)
            if values.get(base_key):
                st.credentials[name].base_url = _parse_base_url(values[base_key])
            if name in CLOUD_PROVIDERS:
                key_name = f"{name}_api_key"
                recognized.add(key_name)
                if key_name in values:
                    st.credentials[name].api_key = values[key_name] or None

        if "api_key" in values:
            st.credentials[st.provider].api_key = values["api_key"] or None
        if values.get("base_url"):
            st.credentials[st.provider].base_url = _parse_base_url(values["base_url"])

        if values.get("model"):
            self._validate_model(st.provider, values["model"])
            st.model = values["model"]
        elif not self._catalog.is_valid_model(st.provider, st.model):
            st.model = self._catalog.default_model(st.provider)

        if values.get("temperature"):
            st.temperature = _parse_temperature(values["temperature"])
        if values.get("max_tokens"):
            st.max_tokens = _parse_max_tokens(values["max_tokens"])
        if values.get("timeout_seconds"):
            st.timeout_seconds = _parse_timeout(values["timeout_seconds"])

        ignored = sorted(k for k in values if k not in recognized)
        if ignored:
            logger.debug("Ignoring unknown config keys", extra={"extra": {"keys": ignored}})

    # ---- 查询 ----

    def active(self) -> ProviderConfig:
        """当前生效配置的不可变快照。"""

        with self._lock:
            st = self._state
            creds = st.credentials[st.provider]
            return ProviderConfig(
                provider=st.provider,
                model=st.model,
                base_url=creds.base_url,
                api_key=creds.api_key,
                temperature=st.temperature,
                max_tokens=st.max_tokens,
                timeout_seconds=st.timeout_seconds,
            )

    def status(self, provider: Optional[str] = None) -> ProviderStatus:
        """计算指定 Provider（默认当前生效的）的就绪状态。

        Ollama 会实际探测一次本地服务，结果记录下来供分发时复用。
        """

        with self._lock:
            name = self._resolve(provider)
            creds = replace(self._state.credentials[name])
            model = self._state.model if name == self._state.provider else self._catalog.default_model(name)
        spec = get_provider_spec(name)
        if spec.requires_api_key:
            has_key = bool(creds.api_key)
            reachable = has_key
        else:
            has_key = True
            reachable = self._probe_reachable(name, creds.base_url)
        return self._build_status(spec, creds.base_url, has_key, reachable, model)

    def dispatch_snapshot(self) -> Tuple[ProviderConfig, ProviderStatus]:
        """分发时使用的轻量就绪检查。

        云端 Provider 只检查 Key；Ollama 复用最近一次成功的探测结果，
        没有结果或上次不可达时重新探测一次。
        """

        cfg = self.active()
        spec = get_provider_spec(cfg.provider)
        if spec.requires_api_key:
            has_key = cfg.has_key
            reachable = has_key
        else:
            has_key = True
            with self._lock:
                cached = self._reachable.get(cfg.provider)
            if cached and cached[0] == cfg.base_url and cached[1]:
                reachable = True
            else:
                reachable = self._probe_reachable(cfg.provider, cfg.base_url)
        return cfg, self._build_status(spec, cfg.base_url, has_key, reachable, cfg.model)

    def base_url(self, provider: Optional[str] = None) -> str:
        with self._lock:
            return self._state.credentials[self._resolve(provider)].base_url

    def list_ready(self) -> List[str]:
        return [name for name in SUPPORTED_PROVIDERS if self.status(name).ready]

    def list_all(self) -> List[str]:
        return list(SUPPORTED_PROVIDERS)

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    def summary(self) -> str:
        """生效配置摘要，API Key 只显示固定长度前缀。"""

        cfg = self.active()
        spec = get_provider_spec(cfg.provider)
        lines = [
            f"{spec.display_name} Provider",
            f"  provider: {cfg.provider}",
            f"  model: {cfg.model}",
            f"  base_url: {cfg.base_url}",
            f"  api_key: {mask_secret(cfg.api_key) if spec.requires_api_key else '(not required)'}",
            f"  temperature: {cfg.temperature}",
            f"  max_tokens: {cfg.max_tokens}",
            f"  timeout_seconds: {cfg.timeout_seconds:g}",
        ]
        with self._lock:
            stored = {name: self._state.credentials[name].api_key for name in CLOUD_PROVIDERS}
        lines.append("  stored keys:")
        for name, key in stored.items():
            lines.append(f"    {name}_api_key: {mask_secret(key)}")
        return "\n".join(lines)

    def setup_help(self, provider: Optional[str] = None) -> str:
        """Provider 配置帮助文本。"""

        with self._lock:
            name = self._resolve(provider)
            base_url = self._state.credentials[name].base_url
        spec = get_provider_spec(name)
        models = self._catalog.model_list_for_display(name)
        if spec.requires_api_key:
            return "\n".join([
                f"{spec.display_name} setup:",
                f"  1. Create an API key at {spec.key_url}",
                f"  2. Call set_api_key(\"<your key>\") or add {name}_api_key=<your key> to your config file",
                f"  3. Select it with set_provider(\"{name}\") or provider={name}",
                f"  Default model: {spec.default_model}",
                f"  Available models: {models}",
            ])
        return "\n".join([
            f"{spec.display_name} setup:",
            "  1. Install Ollama from https://ollama.com/download",
            "  2. Start the local server: ollama serve",
            f"  3. Pull a model: ollama pull {spec.default_model}",
            f"  4. Select it with set_provider(\"{name}\"); no API key is required",
            f"  Server address: {base_url} (change with ollama_base_url=...)",
            f"  Available models: {models}",
        ])

    # ---- 内部辅助 ----

    def _resolve(self, provider: Optional[str]) -> str:
        if provider is None:
            return self._state.provider
        return get_provider_spec(provider).name

    def _validate_model(self, provider: str, model: str) -> None:
        if self._allow_unlisted or self._catalog.is_valid_model(provider, model):
            return
        raise ConfigError(
            code="UNKNOWN_MODEL",
            message=(
                f"Unsupported {provider} model: '{model}'. "
                f"Supported models: {self._catalog.model_list_for_display(provider)}"
            ),
            provider=provider,
            model=model,
        )

    def _probe_reachable(self, name: str, base_url: str) -> bool:
        reachable = bool(self._probe(base_url, self._probe_timeout))
        with self._lock:
            self._reachable[name] = (base_url, reachable)
        return reachable

    def _check_key(self, name: str) -> ProviderStatus:
        """setter 之后的轻量检查，不发起网络探测。

        云端 Provider 只看 Key；Ollama 只使用同一 base_url 下已记录的探测结果。
        """

        spec = get_provider_spec(name)
        with self._lock:
            creds = replace(self._state.credentials[name])
            model = self._state.model if name == self._state.provider else self._catalog.default_model(name)
            cached = self._reachable.get(name)
        if spec.requires_api_key:
            has_key = bool(creds.api_key)
            reachable = has_key
            if not has_key:
                logger.warning(
                    "API key missing",
                    extra={"extra": {"provider": name, "hint": self._hint(spec, "", False, True)}},
                )
        else:
            has_key = True
            reachable = bool(cached and cached[0] == creds.base_url and cached[1])
        return self._build_status(spec, creds.base_url, has_key, reachable, model)

    def _build_status(
        self,
        spec: ProviderSpec,
        base_url: str,
        has_key: bool,
        reachable: bool,
        model: str,
    ) -> ProviderStatus:
        ready = has_key and reachable and bool(model)
        hint = None if ready else self._hint(spec, base_url, has_key, bool(model))
        return ProviderStatus(
            provider=spec.name,
            ready=ready,
            has_key=has_key,
            reachable=reachable,
            base_url=base_url,
            hint=hint,
        )

    @staticmethod
    def _hint(spec: ProviderSpec, base_url: str, has_key: bool, has_model: bool) -> str:
        if spec.requires_api_key and not has_key:
            return (
                f"{spec.display_name} requires an API key. Get one at {spec.key_url}, "
                f"then call set_api_key or add {spec.name}_api_key=... to your config file."
            )
        if not has_model:
            return f"No model selected for {spec.name}; call set_model."
        return (
            f"Ollama server is not reachable at {base_url}. Start the local server with "
            f"`ollama serve` (install from https://ollama.com) or set ollama_base_url."
        )

    @staticmethod
    def _report(status: ProviderStatus, op: str) -> None:
        if status.ready:
            logger.info(f"{op}: provider ready", extra={"extra": {"provider": status.provider}})
        else:
            logger.warning(
                f"{op}: provider not ready",
                extra={"extra": {"provider": status.provider, "hint": status.hint}},
            )
