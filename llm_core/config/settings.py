"""进程级默认配置。

按优先级从以下来源加载（高到低）：
1. 构造参数；
2. 环境变量（不区分大小写，例如 OPENAI_API_KEY）；
3. .env 文件；
4. config.yaml（路径可用 LLM_CONFIG_FILE 指定）。

这里只保存启动时的默认值；运行期可变的“当前生效配置”
由 llm_core.config.store.ConfigStore 管理。
"""

import os
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


def _find_config_yaml() -> Optional[Path]:
    """返回第一个存在的 config.yaml 路径（若有）。"""

    candidates = []
    explicit = os.getenv("LLM_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])
    for path in candidates:
        if path.is_file():
            return path
    return None


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 选择 ----
    default_provider: str = Field(
        default="openai",
        description="启动时生效的 Provider：openai、anthropic、gemini、ollama",
    )
    default_model: Optional[str] = Field(
        default=None,
        description="启动时使用的模型；为空时使用 Provider 的默认模型",
    )

    # ---- 各 Provider 凭据与地址 ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1")
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    ollama_base_url: str = Field(default="http://localhost:11434")

    # ---- 生成参数 ----
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    max_tokens: int = Field(default=1000, ge=1, description="单次回复的最大 token 数")
    timeout_seconds: float = Field(default=30.0, gt=0, description="单次 HTTP 调用超时（秒）")

    # ---- 运行时行为 ----
    ollama_probe_timeout: float = Field(default=2.0, gt=0, description="Ollama 连通性探测超时（秒）")
    async_workers: int = Field(default=4, ge=1, le=64, description="异步调用线程池大小")
    strict_parsing: bool = Field(
        default=False,
        description="响应结构不符合预期时是否报错（默认宽松：退回原始文本）",
    )
    allow_unlisted_models: bool = Field(
        default=False,
        description="是否允许设置模型目录之外的模型名",
    )
    models_override_dir: Optional[str] = Field(
        default=None,
        description="包含 models-override.yaml 的目录",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否截断日志中的对话内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("default_provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("openai_api_key", "anthropic_api_key", "gemini_api_key")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        sources = [init_settings, env_settings, dotenv_settings]
        yaml_path = _find_config_yaml()
        if yaml_path is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_path))
        sources.append(file_secret_settings)
        return tuple(sources)


settings = Settings()
