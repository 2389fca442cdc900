"""对话分发核心模块。

一次对话调用的完整路径：

1. 从 ConfigStore 取得当前配置快照并做轻量就绪检查，未就绪直接抛出 NotReady；
2. 通过工厂按 Provider 名称创建适配器；
3. 在该 agent 的轮次内读取历史快照，构造 ChatRequest；
4. 调用适配器；成功后依次追加 user prompt 与 assistant 回复，失败则不写历史。

同步调用在调用方线程执行；异步调用返回 DeferredTask，并在一个小线程池中执行。
同一 agent 的异步调用按顺序排队，上一个结束后才提交下一个，
因此不会有工作线程空等轮次，不同 agent 的调用可以并行。
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Hashable, Optional, Tuple

from llm_core.config.settings import settings
from llm_core.config.store import ConfigStore
from llm_core.domain.exceptions import NotReady, ValidationError
from llm_core.domain.history import HistoryStore, TurnTicket
from llm_core.domain.models import ChatRequest, ChatResult, ProviderConfig
from llm_core.engine.deferred import DeferredTask
from llm_core.engine.templates import Variables, load_template
from llm_core.infrastructure.logging.logger import logger
from llm_core.providers import create_provider
from llm_core.providers.base import ProviderClient

ProviderFactory = Callable[[str], ProviderClient]


@dataclass
class _Job:
    """一次排队中的异步调用。"""

    ticket: TurnTicket
    future: Future
    prompt: str
    cfg: ProviderConfig
    client: ProviderClient
    system_prompt: Optional[str]


class Dispatcher:
    def __init__(
        self,
        config_store: ConfigStore,
        history: HistoryStore,
        provider_factory: Optional[ProviderFactory] = None,
        max_workers: Optional[int] = None,
    ):
        self._config = config_store
        self._history = history
        self._factory = provider_factory or create_provider
        self._max_workers = max_workers or settings.async_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        # agent -> 待执行的异步任务，队首为正在执行（或已提交）的任务
        self._pending: Dict[Hashable, Deque[_Job]] = {}
        self._queue_lock = threading.Lock()

    @property
    def config(self) -> ConfigStore:
        return self._config

    @property
    def history(self) -> HistoryStore:
        return self._history

    def chat(self, agent_id: Hashable, prompt: str, system_prompt: Optional[str] = None) -> str:
        """同步对话，返回回复文本。"""

        return self.chat_result(agent_id, prompt, system_prompt=system_prompt).text

    def chat_result(self, agent_id: Hashable, prompt: str, system_prompt: Optional[str] = None) -> ChatResult:
        """同步对话，返回完整的 ChatResult。

        Raises:
            NotReady: 当前 Provider 未就绪（不会发起网络调用）。
            UnknownProvider: 配置中的 Provider 无法创建适配器。
            NetworkError: 调用失败（含 ApiError / RequestTimeout），历史不变。
        """

        cfg, client = self._prepare(agent_id, prompt)
        with self._history.reserve_turn(agent_id):
            return self._execute(agent_id, prompt, cfg, client, system_prompt)

    def chat_async(self, agent_id: Hashable, prompt: str, system_prompt: Optional[str] = None) -> DeferredTask:
        """异步对话：就绪检查与配置捕获同步完成，调用立即在后台开始。"""

        cfg, client = self._prepare(agent_id, prompt)
        task = DeferredTask(agent_id, prompt)
        future: Future = Future()
        task.attach(future)
        with self._queue_lock:
            # 票据顺序与排队顺序一致
            job = _Job(self._history.reserve_turn(agent_id), future, prompt, cfg, client, system_prompt)
            queue = self._pending.setdefault(agent_id, deque())
            queue.append(job)
            start_now = len(queue) == 1
        self._log(logging.INFO, "Async chat queued", agent_id, cfg, queued=not start_now)
        if start_now:
            self._submit(agent_id, job)
        return task

    def chat_with_template(self, agent_id: Hashable, template_path: str, variables: Variables = None) -> str:
        """使用 YAML 模板对话。模板中的 system 只作用于本次调用，不写入历史。"""

        template = load_template(template_path)
        prompt = template.render(variables)
        return self.chat(agent_id, prompt, system_prompt=template.system)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # ---- 内部实现 ----

    def _prepare(self, agent_id: Hashable, prompt: str) -> Tuple[ProviderConfig, ProviderClient]:
        if not isinstance(prompt, str):
            raise ValidationError(code="INVALID_PROMPT", message=f"prompt must be a string, got {type(prompt).__name__}")
        if agent_id is None:
            raise ValidationError(code="INVALID_AGENT", message="agent_id is required")
        cfg, status = self._config.dispatch_snapshot()
        if not status.ready:
            self._log(logging.WARNING, "Provider not ready", agent_id, cfg, hint=status.hint)
            raise NotReady(
                code="PROVIDER_NOT_READY",
                message=f"Provider {cfg.provider} is not ready: {status.hint}",
                http_status=503,
                provider=cfg.provider,
                hint=status.hint,
            )
        return cfg, self._factory(cfg.provider)

    def _submit(self, agent_id: Hashable, job: _Job) -> None:
        try:
            self._get_executor().submit(self._run_job, agent_id, job)
        except RuntimeError as e:
            # 线程池已关闭：该任务直接失败，并继续处理同一 agent 的后续任务
            job.ticket.release()
            job.future.set_exception(
                ValidationError(code="DISPATCHER_CLOSED", message=f"Dispatcher has been shut down: {e}")
            )
            self._job_finished(agent_id)

    def _run_job(self, agent_id: Hashable, job: _Job) -> None:
        try:
            with job.ticket:
                result = self._execute(agent_id, job.prompt, job.cfg, job.client, job.system_prompt)
        except Exception as e:
            job.future.set_exception(e)
        else:
            job.future.set_result(result)
        finally:
            self._job_finished(agent_id)

    def _job_finished(self, agent_id: Hashable) -> None:
        """当前任务结束后才提交该 agent 的下一个任务，工作线程不会阻塞在排队上。"""

        with self._queue_lock:
            queue = self._pending[agent_id]
            queue.popleft()
            if not queue:
                del self._pending[agent_id]
                return
            job = queue[0]
        self._submit(agent_id, job)

    def _execute(
        self,
        agent_id: Hashable,
        prompt: str,
        cfg: ProviderConfig,
        client: ProviderClient,
        system_prompt: Optional[str],
    ) -> ChatResult:
        req = ChatRequest(
            history=self._history.snapshot(agent_id),
            prompt=prompt,
            config=cfg,
            system_prompt=system_prompt,
        )
        start_time = time.time()
        result = client.send(req)
        elapsed_ms = int((time.time() - start_time) * 1000)
        if result.error is not None:
            self._log(
                logging.ERROR,
                "Chat failed",
                agent_id,
                cfg,
                code=result.error.code,
                error=result.error.message,
                elapsed_ms=elapsed_ms,
            )
            raise result.error
        if result.degraded is not None:
            self._log(logging.WARNING, "Chat reply degraded", agent_id, cfg, code=result.degraded.code)
        self._history.append_turn(agent_id, prompt, result.text)
        self._log(
            logging.INFO,
            "Chat completed",
            agent_id,
            cfg,
            prompt=prompt,
            reply=result.text,
            history_len=len(req.history) + 2,
            elapsed_ms=elapsed_ms,
        )
        return result

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="llm-chat")
            return self._executor

    @staticmethod
    def _log(level: int, msg: str, agent_id: Hashable, cfg: ProviderConfig, **kwargs: Any) -> None:
        payload: Dict[str, Any] = {"agent_id": str(agent_id), "provider": cfg.provider, "model": cfg.model}
        payload.update(kwargs)
        logger.log(level, msg, extra={"extra": payload})
