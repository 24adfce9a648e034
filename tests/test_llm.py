"""
LLM 层测试：响应归一化 / 结构化输出重试 / 错误类型 / 能力封装
"""

import asyncio

import pytest
import requests

from config.settings import settings
from vitachat.llm.capability import LLMCapability, render_conversation
from vitachat.llm.errors import (
    LLMConfigurationError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
    error_for_status,
)
from vitachat.llm.llm_manager import (
    DryRunChatClient,
    HTTPChatClient,
    LLMManager,
    OpenAICompatProvider,
    ProviderConfig,
    RawLogStore,
    _request_with_retry,
    mask_secret,
    normalize_response,
    provider_env_var,
)
from vitachat.research.schemas import ResearchResponse, ScopeDecision


@pytest.fixture(autouse=True)
def _clean_llm_env(monkeypatch):
    for key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "VITA_LLM__OPENAI__API_KEY", "LLM_DRY_RUN", "VITA_LLM_DEFAULT"):
        monkeypatch.delenv(key, raising=False)


def _manager(tmp_path, api_key="sk-test-0123456789abcdef", dry_run=False):
    raw = {
        "llm": {
            "default": "openai",
            "dry_run": dry_run,
            "providers": {
                "openai": {
                    "api_key": api_key,
                    "base_url": "https://api.openai.com/v1",
                    "default_model": "gpt-4o",
                },
            },
        }
    }
    return LLMManager.from_dict(raw, log_store=RawLogStore(tmp_path))


class StubProvider(OpenAICompatProvider):
    """按顺序返回预置响应，并记录 payload"""

    def __init__(self, responses):
        super().__init__(ProviderConfig(name="openai", api_key="k", base_url="https://api.openai.com/v1",
                                        default_model="gpt-4o"))
        self.responses = list(responses)
        self.payloads = []
        self.endpoints = []

    def request(self, payload, timeout=None):
        self.payloads.append(payload)
        self.endpoints.append("chat")
        return self.responses.pop(0)

    def respond(self, payload, timeout=None):
        self.payloads.append(payload)
        self.endpoints.append("responses")
        return self.responses.pop(0)


def _chat_raw(text):
    return {"choices": [{"message": {"content": text}}], "usage": {"total_tokens": 3}}


# ── 归一化 ──

class TestNormalizeResponse:
    def test_chat_completions(self):
        out = normalize_response(_chat_raw("hello"))
        assert out["final_text"] == "hello" and out["usage"] == {"total_tokens": 3}

    def test_responses_api(self):
        raw = {"output": [
            {"type": "web_search_call"},
            {"type": "message", "content": [{"type": "output_text", "text": '{"a":'},
                                            {"type": "output_text", "text": " 1}"}]},
        ]}
        assert normalize_response(raw)["final_text"] == '{"a": 1}'

    def test_anthropic_last_text_block(self):
        raw = {"content": [{"type": "text", "text": "searching"}, {"type": "server_tool_use"},
                           {"type": "text", "text": "final"}]}
        assert normalize_response(raw, is_anthropic=True)["final_text"] == "final"


# ── 客户端 ──

class TestHTTPChatClient:
    def test_structured_output_retries_once(self, tmp_path):
        provider = StubProvider([_chat_raw("not json"), _chat_raw('```json\n{"research": true}\n```')])
        client = HTTPChatClient(provider.config, provider, RawLogStore(tmp_path))
        result = client.chat([{"role": "user", "content": "hi"}], response_model=ScopeDecision)
        assert result["parsed_object"] == ScopeDecision(research=True)
        assert len(provider.payloads) == 2
        assert provider.payloads[1]["messages"][-1]["content"].startswith("Your previous response could not")

    def test_structured_output_gives_up(self, tmp_path):
        provider = StubProvider([_chat_raw("nope"), _chat_raw("still nope")])
        client = HTTPChatClient(provider.config, provider, RawLogStore(tmp_path))
        assert client.chat([{"role": "user", "content": "hi"}], response_model=ScopeDecision)["parsed_object"] is None

    def test_web_search_uses_responses_api(self, tmp_path):
        body = '{"research_results": "x", "key_developments": [], "citations": []}'
        raw = {"output": [{"type": "message", "content": [{"type": "output_text", "text": body}]}]}
        provider = StubProvider([raw])
        client = HTTPChatClient(provider.config, provider, RawLogStore(tmp_path))
        result = client.chat(
            [{"role": "system", "content": "be thorough"}, {"role": "user", "content": "rates"}],
            response_model=ResearchResponse, web_search=True, max_tokens=100,
        )
        payload = provider.payloads[0]
        assert provider.endpoints == ["responses"]
        assert payload["instructions"] == "be thorough"
        assert payload["tools"] == [{"type": "web_search_preview"}]
        assert payload["text"]["format"]["type"] == "json_schema"
        assert payload["max_output_tokens"] == 100
        assert result["parsed_object"].research_results == "x"


class _FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class _FakeSession:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def request(self, method, url, timeout=None, **kwargs):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestRequestWithRetry:
    @pytest.fixture(autouse=True)
    def _fast_retries(self, monkeypatch):
        monkeypatch.setattr(settings.perf_llm, "max_retries", 1)
        monkeypatch.setattr("vitachat.llm.llm_manager.time.sleep", lambda seconds: None)

    def test_retries_transient_status(self):
        session = _FakeSession([_FakeResponse(503), _FakeResponse(200)])
        assert _request_with_retry(session, "POST", "u", 5, "openai").status_code == 200
        assert session.calls == 2

    def test_final_429_is_rate_limit(self):
        session = _FakeSession([_FakeResponse(429), _FakeResponse(429, "slow down")])
        with pytest.raises(LLMRateLimitError) as exc:
            _request_with_retry(session, "POST", "u", 5, "openai")
        assert exc.value.retryable and exc.value.status_code == 429

    def test_auth_failure_not_retried(self):
        session = _FakeSession([_FakeResponse(401, "bad key")])
        with pytest.raises(LLMConfigurationError):
            _request_with_retry(session, "POST", "u", 5, "openai")
        assert session.calls == 1

    def test_network_error(self):
        session = _FakeSession([requests.ConnectionError("reset"), requests.ConnectionError("reset")])
        with pytest.raises(LLMError):
            _request_with_retry(session, "POST", "u", 5, "openai")


class TestErrors:
    def test_error_for_status(self):
        assert isinstance(error_for_status(429, "x"), LLMRateLimitError)
        assert isinstance(error_for_status(401, "x"), LLMConfigurationError)
        assert isinstance(error_for_status(403, "x"), LLMConfigurationError)
        plain = error_for_status(500, "x")
        assert type(plain) is LLMError and not plain.retryable


# ── Manager ──

class TestLLMManager:
    def test_placeholder_key_is_configuration_error(self, tmp_path):
        with pytest.raises(LLMConfigurationError):
            _manager(tmp_path, api_key="sk-xxx").get_client("openai")

    def test_unknown_provider(self, tmp_path):
        with pytest.raises(LLMConfigurationError):
            _manager(tmp_path).get_client("nope")

    def test_dry_run_client(self, tmp_path):
        client = _manager(tmp_path, dry_run=True).get_client()
        assert isinstance(client, DryRunChatClient)
        assert client.chat([{"role": "user", "content": "hi"}])["final_text"].startswith("[DRY_RUN]")

    def test_env_key_overrides_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv(provider_env_var("openai"), "sk-from-env-0123456789")
        manager = _manager(tmp_path, api_key="sk-xxx")
        assert manager.is_available("openai")
        assert provider_env_var("openai-mini") == "VITA_LLM__OPENAI_MINI__API_KEY"

    def test_mask_secret(self):
        assert mask_secret("") == "(empty)"
        assert mask_secret("sk-abcdefghijklmnop") == "sk-a...mnop"


# ── 能力封装 ──

class _StubClient:
    def __init__(self, parsed):
        self.parsed = parsed
        self.calls = []

    def chat(self, messages, **kwargs):
        self.calls.append((messages, kwargs))
        return {"parsed_object": self.parsed}


class _StubManager:
    def __init__(self, client):
        self.client = client
        self.config = type("Cfg", (), {"scope_provider": "openai", "research_provider": "openai"})()

    def get_client(self, provider=None):
        return self.client


class TestLLMCapability:
    def test_render_conversation(self):
        text = render_conversation([{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"},
                                    {"role": "system", "content": "c"}])
        assert text == "User: a\nAssistant: b\nAssistant: c"

    def test_decide_scope(self):
        client = _StubClient(ScopeDecision(research=True))
        cap = LLMCapability(manager=_StubManager(client))
        assert asyncio.run(cap.decide_scope([{"role": "user", "content": "rates?"}])) is True
        assert client.calls[0][0][-1]["content"] == "User: rates?"

    def test_unparsed_scope_means_no(self):
        cap = LLMCapability(manager=_StubManager(_StubClient(None)))
        assert asyncio.run(cap.decide_scope([{"role": "user", "content": "?"}])) is False

    def test_scope_rate_limit_propagates(self):
        class Exploding(_StubClient):
            def chat(self, messages, **kwargs):
                raise LLMRateLimitError("429", 429)

        cap = LLMCapability(manager=_StubManager(Exploding(None)))
        with pytest.raises(LLMRateLimitError):
            asyncio.run(cap.decide_scope([{"role": "user", "content": "?"}]))

    def test_research_requires_parse(self):
        cap = LLMCapability(manager=_StubManager(_StubClient(None)))
        with pytest.raises(LLMResponseError):
            asyncio.run(cap.research("prompt", "User: q"))

    def test_research_uses_web_search(self):
        client = _StubClient(ResearchResponse(research_results="ok"))
        cap = LLMCapability(manager=_StubManager(client))
        assert asyncio.run(cap.research("prompt", "User: q")).research_results == "ok"
        messages, kwargs = client.calls[0]
        assert messages[0] == {"role": "system", "content": "prompt"}
        assert kwargs["web_search"] is True and kwargs["response_model"] is ResearchResponse
