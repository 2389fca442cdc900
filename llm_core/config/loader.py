"""key=value 配置文件解析。

格式：
- 每行一个 `key=value`，首尾空白会被去掉，值可以为空；
- 以 `#` 开头的行和空行会被忽略；
- 同一个 key 出现多次时后者覆盖前者。

例如::

    provider=openai
    openai_api_key=sk-...
    anthropic_api_key=sk-ant-...
    model=gpt-4o-mini
"""

from __future__ import annotations

from collections import OrderedDict
from pathlib import Path
from typing import Iterable, MutableMapping

from llm_core.domain.exceptions import ConfigError


def parse_config_lines(lines: Iterable[str]) -> MutableMapping[str, str]:
    """Return key/value pairs from config lines (order preserved)."""

    pairs: MutableMapping[str, str] = OrderedDict()
    for lineno, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigError(
                code="CONFIG_PARSE_ERROR",
                message=f"Error parsing line {lineno}: missing '=' separator in line: {line}",
                line=lineno,
            )
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            raise ConfigError(
                code="CONFIG_PARSE_ERROR",
                message=f"Error parsing line {lineno}: missing key in line: {line}",
                line=lineno,
            )
        pairs[key] = value.strip()
    return pairs


def load_config_file(path: str | Path) -> MutableMapping[str, str]:
    """读取并解析配置文件。文件不存在或不可读时抛出 ConfigError。"""

    p = Path(path).expanduser()
    if not p.is_file():
        raise ConfigError(code="CONFIG_NOT_FOUND", message=f"Configuration file not found: {path}")
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(code="CONFIG_READ_ERROR", message=f"Cannot read configuration file {path}: {e}")
    return parse_config_lines(text.splitlines())
