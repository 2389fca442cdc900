import httpx
import pytest

from llm_core.api.service import LLMService
from llm_core.engine.dispatcher import Dispatcher
from llm_core.providers import create_provider


@pytest.fixture
def service(store, history, transport_factory):
    recorder = transport_factory(httpx.Response(200, json={"choices": [{"message": {"content": "2) green"}}]}))
    dispatcher = Dispatcher(
        store,
        history,
        provider_factory=lambda name: create_provider(name, transport=recorder.transport, strict=False),
        max_workers=2,
    )
    svc = LLMService(config_store=store, history=history, dispatcher=dispatcher)
    svc.recorder = recorder
    yield svc
    svc.shutdown()


def test_chat_not_ready_returns_structured_error(service):
    res = service.chat("agent1", "hi")
    assert res["ok"] is False
    assert res["error"]["type"] == "NotReady"
    assert res["error"]["code"] == "PROVIDER_NOT_READY"
    assert res["error"]["hint"]


def test_chat_and_history_roundtrip(service):
    assert service.set_api_key("sk-test")["ok"]
    res = service.chat("agent1", "hi")
    assert res["ok"] and res["reply"] == "2) green"
    assert res["degraded"] is False
    assert service.get_history("agent1")["history"] == [["user", "hi"], ["assistant", "2) green"]]

    assert service.clear_history("agent1")["ok"]
    assert service.get_history("agent1")["history"] == []


def test_set_history_validates_roles(service):
    res = service.set_history("agent1", [["System", "be brief"], ["user", "hi"]])
    assert res == {"ok": True, "count": 2}
    assert service.get_history("agent1")["history"][0] == ["system", "be brief"]

    bad = service.set_history("agent1", [["robot", "beep"]])
    assert bad["ok"] is False
    assert bad["error"]["code"] == "INVALID_ROLE"
    # 失败时原历史不变
    assert len(service.get_history("agent1")["history"]) == 2


def test_async_chat_handle(service):
    service.set_api_key("sk-test")
    res = service.chat_async("agent1", "hi")
    handle = res["handle"]
    first = handle.force(timeout=5)
    second = handle.force()
    assert first == second
    assert first["reply"] == "2) green"
    assert handle.done()
    assert len(service.recorder.requests) == 1


def test_choose(service):
    service.set_api_key("sk-test")
    res = service.choose("agent1", "pick one", ["red", "green", "blue"])
    assert res["ok"]
    assert res["choice"] == "green"
    assert res["fallback"] is False

    bad = service.choose("agent1", "pick one", ["red"])
    assert bad["ok"] is False
    assert bad["error"]["code"] == "INVALID_OPTIONS"


def test_provider_listing_and_status(service, probe):
    probe.reachable = False
    assert service.list_providers()["providers"] == ["openai", "anthropic", "gemini", "ollama"]
    assert service.list_providers(ready_only=True)["providers"] == []
    status = service.provider_status("ollama")["status"]
    assert status["ready"] is False and status["has_key"] is True

    res = service.set_provider("nope")
    assert res["ok"] is False
    assert res["error"]["type"] == "UnknownProvider"


def test_config_operations(service, tmp_path):
    path = tmp_path / "sim.conf"
    path.write_text("provider=gemini\ngemini_api_key=AIzaSyExample123\n", encoding="utf-8")
    res = service.load_config(str(path))
    assert res["ok"] and res["status"]["ready"]

    summary = service.config_summary()["summary"]
    assert "AIzaSyExample123" not in summary
    assert "AIza..." in summary

    res = service.set_model("gemini-1.5-pro")
    assert res["model"] == "gemini-1.5-pro"
    assert res["status"]["ready"] and res["status"]["provider"] == "gemini"
    assert service.set_model("gpt-4o")["error"]["code"] == "UNKNOWN_MODEL"
    assert service.set_temperature("9")["ok"] is False
    assert "aistudio.google.com" in service.setup_help()["help"]

    missing = service.load_config(str(tmp_path / "nope.conf"))
    assert missing["error"]["code"] == "CONFIG_NOT_FOUND"


def test_bad_config_line_reports_line(service, tmp_path):
    path = tmp_path / "broken.conf"
    path.write_text("provider=openai\noops\n", encoding="utf-8")
    res = service.load_config(str(path))
    assert res["ok"] is False
    assert res["error"]["line"] == 2


def test_model_listing(service, tmp_path):
    assert service.list_models("anthropic")["models"][0] == "claude-3-5-haiku-latest"
    assert service.list_models()["provider"] == "openai"

    (tmp_path / "models-override.yaml").write_text("openai:\n  - gpt-4.1-mini\n", encoding="utf-8")
    res = service.load_model_override(str(tmp_path))
    assert res["loaded"] is True
    text = service.format_models()["text"]
    assert "gpt-4.1-mini [custom]" in text


def test_unexpected_errors_are_contained(service, monkeypatch):
    def boom(*a, **kw):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service.history, "snapshot", boom)
    res = service.get_history("agent1")
    assert res["ok"] is False
    assert res["error"]["code"] == "INTERNAL_ERROR"


def test_credential_setters_report_status(service, probe):
    res = service.set_api_key("")
    assert res["ok"] is True
    assert res["status"]["ready"] is False
    assert "requires an API key" in res["status"]["hint"]

    res = service.set_api_key("sk-test")
    assert res["status"]["ready"] is True and res["status"]["hint"] is None
    res = service.set_base_url("https://proxy.example.com/v1")
    assert res["status"]["base_url"] == "https://proxy.example.com/v1"
    assert probe.calls == []
