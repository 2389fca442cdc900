"""YAML 提示模板。

模板文件结构::

    system: You are a cautious farmer.
    template: |
      The weather is {weather}. Should you plant {crop} today?

- system 可选，只作为本次调用的 system 提示发送，不写入历史；
- template 中的 `{name}` 占位符用变量替换，未提供的占位符原样保留。
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

import yaml

from llm_core.domain.exceptions import ConfigError, ValidationError

Variables = Union[Mapping[str, Any], Iterable[Tuple[Any, Any]], None]


@dataclass(frozen=True)
class PromptTemplate:
    template: str
    system: Optional[str] = None

    def render(self, variables: Variables = None) -> str:
        text = self.template
        for key, value in normalize_variables(variables).items():
            text = text.replace("{" + key + "}", value)
        return text


def normalize_variables(variables: Variables) -> Mapping[str, str]:
    """接受 dict 或 [key, value] 对列表，统一成字符串字典。"""

    if variables is None:
        return {}
    if isinstance(variables, Mapping):
        return {str(k): str(v) for k, v in variables.items()}
    result = {}
    for pair in variables:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise ValidationError(
                code="INVALID_TEMPLATE_VARIABLES",
                message="Variables must be a mapping or a list of [key, value] pairs",
            )
        key, value = pair
        result[str(key)] = str(value)
    return result


def parse_template(content: str, source: str = "<string>") -> PromptTemplate:
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(code="TEMPLATE_PARSE_ERROR", message=f"Failed to parse template '{source}': {e}")
    if not isinstance(data, dict):
        raise ConfigError(code="TEMPLATE_PARSE_ERROR", message=f"Template '{source}' must be a YAML mapping")
    template = data.get("template")
    if not isinstance(template, str) or not template.strip():
        raise ConfigError(code="TEMPLATE_PARSE_ERROR", message=f"Template '{source}' has no 'template' text")
    system = data.get("system")
    if system is not None and not isinstance(system, str):
        raise ConfigError(code="TEMPLATE_PARSE_ERROR", message=f"'system' in template '{source}' must be a string")
    return PromptTemplate(template=template, system=(system or None))


def load_template(path: Union[str, Path]) -> PromptTemplate:
    p = Path(path).expanduser()
    if not p.is_file():
        raise ConfigError(code="TEMPLATE_NOT_FOUND", message=f"Template file not found: {path}")
    try:
        content = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(code="TEMPLATE_READ_ERROR", message=f"Failed to load template '{path}': {e}")
    return parse_template(content, source=str(path))
