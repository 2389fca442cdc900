import threading
from concurrent.futures import Future

import httpx
import pytest

from llm_core.domain.exceptions import NetworkError, NotReady, ValidationError
from llm_core.engine.deferred import DeferredTask, TaskState


def test_force_twice_issues_one_call(store, history, make_dispatcher):
    store.set_api_key("sk-test")
    dispatcher, recorder = make_dispatcher(httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]}))
    task = dispatcher.chat_async("agent1", "hi")

    first = task.force(timeout=5)
    second = task.force()
    assert first is second
    assert first.text == "hello"
    assert task.state is TaskState.RESOLVED
    assert task.done()
    assert len(recorder.requests) == 1
    assert len(history.snapshot("agent1")) == 2


def test_failed_task_reraises_cached_error(store, history, make_dispatcher):
    store.set_api_key("sk-test")
    dispatcher, recorder = make_dispatcher(httpx.ConnectError("refused"))
    task = dispatcher.chat_async("agent1", "hi")

    with pytest.raises(NetworkError) as first:
        task.force(timeout=5)
    with pytest.raises(NetworkError) as second:
        task.force()
    assert first.value is second.value
    assert task.state is TaskState.FAILED
    assert len(recorder.requests) == 1
    assert history.snapshot("agent1") == ()


def test_chat_async_checks_readiness_synchronously(make_dispatcher):
    dispatcher, recorder = make_dispatcher(httpx.Response(200, json={}))
    with pytest.raises(NotReady):
        dispatcher.chat_async("agent1", "hi")
    assert recorder.requests == []


def test_force_timeout_leaves_task_pending():
    task = DeferredTask("a", "hi")
    future = Future()
    task.attach(future)
    assert task.state is TaskState.PENDING
    with pytest.raises(TimeoutError):
        task.force(timeout=0.01)
    assert not task.done()

    future.set_result("late")
    assert task.force(timeout=1) == "late"


def test_task_must_be_started():
    task = DeferredTask("a", "hi")
    assert task.state is TaskState.CREATED
    with pytest.raises(ValidationError):
        task.force(timeout=0)
    task.attach(Future())
    with pytest.raises(ValidationError):
        task.attach(Future())


def test_concurrent_force_sees_same_outcome():
    task = DeferredTask("a", "hi")
    future = Future()
    task.attach(future)
    results = []

    def force():
        results.append(task.force(timeout=5))

    threads = [threading.Thread(target=force) for _ in range(3)]
    for t in threads:
        t.start()
    future.set_result("done")
    for t in threads:
        t.join(timeout=5)
    assert results == ["done", "done", "done"]
