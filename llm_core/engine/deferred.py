"""异步对话句柄。

Dispatcher.chat_async 会在分发时立即把调用提交到线程池，并返回一个
DeferredTask。调用方稍后通过 force() 取得结果：

- 未完成时 force() 阻塞等待（可选超时）；
- 已完成时立即返回缓存的结果，或重新抛出缓存的错误；
- 结果只产生一次，重复 force() 不会再次发起网络调用。

状态流转：CREATED -> PENDING -> RESOLVED | FAILED，终态只会进入一次。
"""

import threading
from concurrent.futures import Future
from enum import Enum
from typing import Hashable, Optional

from llm_core.domain.exceptions import ValidationError
from llm_core.domain.models import ChatResult


class TaskState(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


TERMINAL_STATES = (TaskState.RESOLVED, TaskState.FAILED)


class DeferredTask:
    """一次异步对话调用的句柄，结果被记忆。"""

    def __init__(self, agent_id: Hashable, prompt: str):
        self.agent_id = agent_id
        self.prompt = prompt
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._state = TaskState.CREATED
        self._future: Optional[Future] = None
        self._result: Optional[ChatResult] = None
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> TaskState:
        with self._lock:
            return self._state

    def attach(self, future: Future) -> None:
        """绑定已提交的 Future，进入 PENDING。"""

        with self._lock:
            if self._state is not TaskState.CREATED:
                raise ValidationError(code="TASK_ALREADY_STARTED", message="Deferred task already started")
            self._future = future
            self._state = TaskState.PENDING
        future.add_done_callback(self._settle)

    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def force(self, timeout: Optional[float] = None) -> ChatResult:
        """取得调用结果。

        Args:
            timeout: 最长等待秒数，None 表示一直等待。

        Raises:
            TimeoutError: 等待超时；任务仍在执行，之后可以再次 force。
            调用本身的错误（NetworkError 等）会被原样重新抛出。
        """

        with self._lock:
            if self._state is TaskState.CREATED:
                raise ValidationError(code="TASK_NOT_STARTED", message="Deferred task was never started")
        if not self._settled.wait(timeout):
            raise TimeoutError(f"Deferred chat for agent {self.agent_id!r} did not finish within {timeout}s")
        with self._lock:
            if self._state is TaskState.FAILED:
                raise self._error
            return self._result

    def _settle(self, future: Future) -> None:
        with self._lock:
            if self._state in TERMINAL_STATES:
                return
            error = future.exception()
            if error is None:
                self._result = future.result()
                self._state = TaskState.RESOLVED
            else:
                self._error = error
                self._state = TaskState.FAILED
        self._settled.set()

    def __repr__(self) -> str:
        return f"DeferredTask(agent_id={self.agent_id!r}, state={self.state.value})"
