"""受限选择：让模型从给定选项中选一个。

流程：
1. 在原 prompt 后附上带编号（从 1 开始）的选项列表，并要求只回答编号或选项原文；
2. 通过 Dispatcher.chat 发送（与普通对话一样写入该 agent 的历史）；
3. 依次尝试：精确匹配 -> 开头编号 -> 子串包含 -> 回退到第一个选项。

无论模型回复什么，返回值一定是 options 中的某一项。
"""

import re
from dataclasses import dataclass
from typing import Any, Hashable, Literal, Optional, Sequence, Tuple

from llm_core.domain.exceptions import ChoiceFallback, ValidationError
from llm_core.engine.dispatcher import Dispatcher
from llm_core.infrastructure.logging.logger import logger

Strategy = Literal["exact", "index", "substring", "fallback"]

QUOTE_CHARS = "\"'`“”‘’"
# "2", "2) green", "Option 2", "#2", "choice 2."
_INDEX_RE = re.compile(r"^(?:option|choice|answer)?\s*[:#]?\s*(\d+)(?!\d)", re.IGNORECASE)


@dataclass(frozen=True)
class ChoiceResult:
    choice: Any
    index: int
    strategy: Strategy
    reply: str
    fallback: Optional[ChoiceFallback] = None


def build_choice_prompt(prompt: str, options: Sequence[Any]) -> str:
    numbered = "\n".join(f"{i}. {option}" for i, option in enumerate(options, start=1))
    return (
        f"{prompt}\n\n"
        "You must respond with EXACTLY ONE of the following options (no other text):\n"
        f"{numbered}\n\n"
        "Answer with only the option number or the exact option text.\n"
        "Response:"
    )


def normalize_reply(text: str) -> str:
    value = (text or "").strip()
    # 反复去掉结尾句点与外层引号，处理 "\"green\"." 这类回复
    while True:
        stripped = value.rstrip(".").strip().strip(QUOTE_CHARS).strip()
        if stripped == value:
            break
        value = stripped
    return value.casefold()


def match_choice(reply: str, options: Sequence[Any]) -> Tuple[int, Strategy]:
    """返回 (选项下标, 匹配策略)；无法匹配时返回 (0, "fallback")。"""

    normalized = normalize_reply(reply)
    keys = [normalize_reply(str(option)) for option in options]

    for i, key in enumerate(keys):
        if normalized == key:
            return i, "exact"

    m = _INDEX_RE.match(normalized)
    if m:
        number = int(m.group(1))
        if 1 <= number <= len(options):
            return number - 1, "index"

    for i, key in enumerate(keys):
        if key and key in normalized:
            return i, "substring"

    return 0, "fallback"


class ChoiceResolver:
    def __init__(self, dispatcher: Dispatcher):
        self._dispatcher = dispatcher

    def choose(self, agent_id: Hashable, prompt: str, options: Sequence[Any]) -> ChoiceResult:
        """让模型在 options 中选择一项。

        Raises:
            ValidationError: 选项少于 2 个。
            以及 Dispatcher.chat 可能抛出的 NotReady / NetworkError 等。
        """

        if isinstance(options, (str, bytes)) or len(options) < 2:
            raise ValidationError(code="INVALID_OPTIONS", message="choose requires at least 2 options")
        options = list(options)
        reply = self._dispatcher.chat(agent_id, build_choice_prompt(prompt, options))
        index, strategy = match_choice(reply, options)
        notice = None
        if strategy == "fallback":
            notice = ChoiceFallback(
                code="CHOICE_FALLBACK",
                message=f"Reply did not match any option, using {options[0]!r}",
                reply=reply,
            )
            logger.warning(
                "Choice reply did not match any option",
                extra={"extra": {"agent_id": str(agent_id), "reply": reply, "options": [str(o) for o in options]}},
            )
        return ChoiceResult(choice=options[index], index=index, strategy=strategy, reply=reply, fallback=notice)
