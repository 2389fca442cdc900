import json

import httpx
import pytest

from llm_core.domain.exceptions import ApiError, NetworkError, ParseDegraded, RateLimitError, RequestTimeout, UnknownProvider
from llm_core.domain.models import ChatMessage, ChatRequest, ProviderConfig
from llm_core.providers import ADAPTERS, create_provider
from llm_core.providers.anthropic_client import AnthropicClient
from llm_core.providers.gemini_client import GeminiClient
from llm_core.providers.ollama_client import OllamaClient, check_server, list_installed_models
from llm_core.providers.openai_client import OpenAIClient
from llm_core.providers.registry import SUPPORTED_PROVIDERS


def make_request(provider, model, base_url, api_key="k", system_prompt=None):
    cfg = ProviderConfig(
        provider=provider,
        model=model,
        base_url=base_url,
        api_key=api_key,
        temperature=0.3,
        max_tokens=64,
        timeout_seconds=5.0,
    )
    history = (ChatMessage.user("earlier"), ChatMessage.assistant("noted"))
    return ChatRequest(history=history, prompt="hi", config=cfg, system_prompt=system_prompt)


def test_openai_payload_and_parse(transport_factory):
    recorder = transport_factory(
        httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
            },
        )
    )
    client = OpenAIClient(transport=recorder.transport)
    res = client.send(make_request("openai", "gpt-4o-mini", "https://api.openai.com/v1", system_prompt="sys"))

    assert res.ok and res.text == "hello"
    assert res.finish_reason == "stop"
    assert res.usage.total_tokens == 4
    request = recorder.requests[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer k"
    body = recorder.body()
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 64
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
    assert body["messages"][-1]["content"] == "hi"


def test_openai_with_fake_client(monkeypatch):
    captured = {}

    class Resp:
        status_code = 200
        text = '{"choices": [{"message": {"content": "ok"}}]}'

        def json(self):
            return {"choices": [{"message": {"content": "ok"}}]}

    class Client:
        def __init__(self, *a, **kw):
            captured["timeout"] = kw.get("timeout")
            captured["trust_env"] = kw.get("trust_env")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            captured["url"] = url
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)
    res = OpenAIClient().send(make_request("openai", "gpt-4o", "http://proxy.local/v1/"))
    assert res.text == "ok"
    assert captured == {"timeout": 5.0, "trust_env": False, "url": "http://proxy.local/v1/chat/completions"}


def test_anthropic_payload_lifts_system(transport_factory):
    recorder = transport_factory(
        httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 5, "output_tokens": 2},
            },
        )
    )
    client = AnthropicClient(transport=recorder.transport)
    res = client.send(make_request("anthropic", "claude-3-5-haiku-latest", "https://api.anthropic.com/v1", system_prompt="be terse"))

    assert res.text == "Hello"
    assert res.finish_reason == "end_turn"
    assert res.usage.total_tokens == 7
    request = recorder.requests[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "k"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = recorder.body()
    assert body["system"] == "be terse"
    assert body["max_tokens"] == 64
    assert all(m["role"] != "system" for m in body["messages"])


def test_gemini_payload_maps_roles(transport_factory):
    recorder = transport_factory(
        httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "hola"}], "role": "model"}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1, "totalTokenCount": 5},
            },
        )
    )
    client = GeminiClient(transport=recorder.transport)
    res = client.send(
        make_request("gemini", "gemini-1.5-flash", "https://generativelanguage.googleapis.com/v1beta", system_prompt="sys")
    )

    assert res.text == "hola"
    assert res.finish_reason == "STOP"
    request = recorder.requests[0]
    assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
    assert request.headers["x-goog-api-key"] == "k"
    assert "key=" not in str(request.url)
    body = recorder.body()
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"]["parts"][0]["text"] == "sys"
    assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 64}


def test_ollama_payload(transport_factory):
    recorder = transport_factory(
        httpx.Response(200, json={"message": {"role": "assistant", "content": "moo"}, "done_reason": "stop", "eval_count": 2})
    )
    client = OllamaClient(transport=recorder.transport)
    res = client.send(make_request("ollama", "llama3.2", "http://localhost:11434", api_key=None))

    assert res.text == "moo"
    assert res.usage.completion_tokens == 2
    assert str(recorder.requests[0].url) == "http://localhost:11434/api/chat"
    body = recorder.body()
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.3, "num_predict": 64}


def test_non_2xx_becomes_api_error(transport_factory):
    recorder = transport_factory(httpx.Response(401, text="invalid api key"))
    res = OpenAIClient(transport=recorder.transport).send(make_request("openai", "gpt-4o", "https://api.openai.com/v1"))
    assert not res.ok
    assert isinstance(res.error, ApiError)
    assert isinstance(res.error, NetworkError)
    assert res.error.http_status == 401
    assert res.error.extra["provider"] == "openai"
    assert "invalid api key" in res.error.message


def test_rate_limit(transport_factory):
    recorder = transport_factory(httpx.Response(429, json={"error": "slow down"}))
    res = AnthropicClient(transport=recorder.transport).send(make_request("anthropic", "m", "https://a.example/v1"))
    assert isinstance(res.error, RateLimitError)
    assert len(recorder.requests) == 1


def test_connection_error_and_timeout(transport_factory):
    recorder = transport_factory(httpx.ConnectError("connection refused"))
    res = OllamaClient(transport=recorder.transport).send(make_request("ollama", "llama3.2", "http://localhost:11434"))
    assert type(res.error) is NetworkError
    assert res.error.code == "NETWORK_ERROR"

    recorder = transport_factory(httpx.ReadTimeout("too slow"))
    res = OllamaClient(transport=recorder.transport).send(make_request("ollama", "llama3.2", "http://localhost:11434"))
    assert isinstance(res.error, RequestTimeout)
    assert res.error.http_status == 504


def test_unexpected_shape_falls_back_to_raw_text(transport_factory):
    recorder = transport_factory(httpx.Response(200, json={"choices": []}))
    res = OpenAIClient(transport=recorder.transport).send(make_request("openai", "gpt-4o", "https://api.openai.com/v1"))
    assert res.ok
    assert json.loads(res.text) == {"choices": []}
    assert isinstance(res.degraded, ParseDegraded)


def test_non_json_body_falls_back_to_raw_text(transport_factory):
    recorder = transport_factory(httpx.Response(200, text="plain words"))
    res = GeminiClient(transport=recorder.transport).send(make_request("gemini", "gemini-1.5-flash", "https://g.example"))
    assert res.text == "plain words"
    assert res.degraded is not None


def test_strict_mode_turns_shape_mismatch_into_error(transport_factory):
    recorder = transport_factory(httpx.Response(200, json={"candidates": []}))
    res = GeminiClient(transport=recorder.transport, strict=True).send(
        make_request("gemini", "gemini-1.5-flash", "https://g.example")
    )
    assert not res.ok
    assert isinstance(res.error, ParseDegraded)
    assert res.text == ""


def test_check_server_and_installed_models(transport_factory):
    recorder = transport_factory(
        httpx.Response(200, json={"models": [{"name": "llama3.2:latest"}, {"name": "phi4"}, {"size": 1}]})
    )
    assert check_server("http://localhost:11434", transport=recorder.transport)
    assert str(recorder.requests[0].url) == "http://localhost:11434/api/tags"
    assert list_installed_models("http://localhost:11434", transport=recorder.transport) == ["llama3.2:latest", "phi4"]


def test_check_server_unreachable(transport_factory):
    recorder = transport_factory(httpx.ConnectError("refused"))
    assert check_server("http://localhost:11434", transport=recorder.transport) is False
    assert list_installed_models("http://localhost:11434", transport=recorder.transport) == []


def test_create_provider():
    assert isinstance(create_provider("OpenAI"), OpenAIClient)
    assert isinstance(create_provider("ollama"), OllamaClient)
    assert create_provider("gemini").list_models()[0] == "gemini-1.5-flash"
    with pytest.raises(UnknownProvider):
        create_provider("glm")


def test_adapters_cover_registry_names():
    # Provider 名称集合只在 registry 中维护一份
    assert tuple(ADAPTERS) == SUPPORTED_PROVIDERS
    for name in SUPPORTED_PROVIDERS:
        assert create_provider(name).name == name


def test_create_provider_uses_strict_setting(monkeypatch):
    class DummySettings:
        strict_parsing = True

    monkeypatch.setattr("llm_core.providers.settings", DummySettings())
    assert create_provider("anthropic")._strict is True
