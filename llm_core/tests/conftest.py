import json

import httpx
import pytest

from llm_core.config.store import ConfigStore
from llm_core.domain.history import HistoryStore
from llm_core.engine.dispatcher import Dispatcher
from llm_core.providers import create_provider
from llm_core.providers.registry import ModelCatalog


class SettingsStub:
    default_provider = "openai"
    default_model = None
    openai_api_key = None
    anthropic_api_key = None
    gemini_api_key = None
    temperature = 0.7
    max_tokens = 1000
    timeout_seconds = 5.0
    ollama_probe_timeout = 0.1
    allow_unlisted_models = False


class ProbeStub:
    """记录调用次数的可达性探测。"""

    def __init__(self, reachable: bool = False):
        self.reachable = reachable
        self.calls = []

    def __call__(self, base_url, timeout):
        self.calls.append(base_url)
        return self.reachable


class RecordingTransport:
    """按顺序返回预设响应，并记录收到的请求。"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resp = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


def openai_reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


@pytest.fixture
def probe():
    return ProbeStub()


@pytest.fixture
def store(probe):
    return ConfigStore(cfg=SettingsStub(), model_catalog=ModelCatalog(), probe=probe)


@pytest.fixture
def history():
    return HistoryStore()


@pytest.fixture
def make_dispatcher(store, history):
    created = []

    def _make(*responses):
        recorder = RecordingTransport(*responses)
        dispatcher = Dispatcher(
            store,
            history,
            provider_factory=lambda name: create_provider(name, transport=recorder.transport, strict=False),
            max_workers=2,
        )
        created.append(dispatcher)
        return dispatcher, recorder

    yield _make
    for d in created:
        d.shutdown()


@pytest.fixture
def transport_factory():
    return RecordingTransport


@pytest.fixture
def settings_stub():
    return SettingsStub
