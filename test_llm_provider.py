"""Provider client tests against a fake aiohttp session."""

import asyncio
import json

import aiohttp
import pytest

from config import Settings
from exceptions import ProviderError
from llm_provider import (
    ChatProvider,
    ClaudeProvider,
    GeminiProvider,
    MistralProvider,
    OpenAIProvider,
    ProviderRegistry,
    RetryPolicy,
    cleanup_providers,
    initialize_providers,
)
from models import ProviderTag

NO_WAIT = RetryPolicy(max_attempts=3, initial_backoff_ms=0, jitter=0)

OPENAI_OK = {
    "choices": [{"message": {"role": "assistant", "content": "Hi"}}],
    "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
}


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession. Outcomes are (status, body) or exceptions; the last one repeats."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    def request(self, method, url, json=None, headers=None, params=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers, "params": params})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(*outcome)

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_simulated_latency(monkeypatch):
    monkeypatch.setattr(ChatProvider, "SIMULATED_LATENCY_SEC", 0)


async def test_openai_success():
    session = FakeSession((200, OPENAI_OK))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    result = await provider.query("Hello")

    assert result.response == "Hi"
    assert (result.input_tokens, result.output_tokens, result.total_tokens, result.num_tokens) == (5, 2, 7, 7)
    assert result.num_retries == 0
    assert result.status_code == 200

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.openai.com/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-live"
    assert call["json"]["model"] == "gpt-4o"
    assert call["json"]["messages"] == [{"role": "user", "content": "Hello"}]
    assert call["json"]["max_tokens"] == 150


async def test_supported_version_is_sent():
    session = FakeSession((200, OPENAI_OK))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    await provider.query("Hello", "gpt-4o-mini")

    assert session.calls[0]["json"]["model"] == "gpt-4o-mini"


async def test_missing_key_fails_without_network():
    session = FakeSession((200, OPENAI_OK))
    provider = OpenAIProvider("", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "API key not configured"
    assert exc_info.value.retryable is False
    assert session.calls == []


async def test_rate_limit_is_retried_until_exhausted():
    session = FakeSession((429, {"error": {"message": "slow down"}}))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.status_code == 429
    assert exc_info.value.message == "Rate limit exceeded"
    assert len(session.calls) == 3


async def test_retry_then_success_counts_retries():
    session = FakeSession((503, "upstream down"), (200, OPENAI_OK))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    result = await provider.query("Hello")

    assert result.response == "Hi"
    assert result.num_retries == 1
    assert len(session.calls) == 2


async def test_client_error_is_not_retried():
    session = FakeSession((400, {"error": {"message": "context too long"}}))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "context too long"
    assert exc_info.value.retryable is False
    assert exc_info.value.http_status == 500
    assert len(session.calls) == 1


async def test_server_error_without_message():
    session = FakeSession((502, "<html>bad gateway</html>"))
    provider = MistralProvider("m-key", session=session, retry_policy=RetryPolicy(max_attempts=1))

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.message == "API error"
    assert exc_info.value.retryable is True


async def test_invalid_json_body():
    session = FakeSession((200, "not json"))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.status_code == 500
    assert exc_info.value.message.startswith("Invalid response: ")
    assert len(session.calls) == 1


@pytest.mark.parametrize("body", [
    {"choices": []},
    {"choices": [{"message": {"content": ""}}]},
    {"unexpected": True},
])
async def test_empty_response(body):
    session = FakeSession((200, body))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.message == "Empty response"
    assert exc_info.value.retryable is False


async def test_timeout_maps_to_408():
    session = FakeSession(asyncio.TimeoutError())
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.query("Hello")

    assert exc_info.value.status_code == 408
    assert exc_info.value.message == "Request timeout"
    assert len(session.calls) == 3


async def test_connection_error_maps_to_503():
    session = FakeSession(aiohttp.ClientConnectionError("refused"), (200, OPENAI_OK))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    result = await provider.query("Hello")

    assert result.num_retries == 1


async def test_missing_usage_is_estimated():
    session = FakeSession((200, {"choices": [{"message": {"content": "ABCDEFGH"}}]}))
    provider = OpenAIProvider("sk-live", session=session, retry_policy=NO_WAIT)

    result = await provider.query("ABCD")

    assert (result.input_tokens, result.output_tokens, result.total_tokens) == (1, 2, 3)


async def test_claude_wire_format():
    body = {"content": [{"type": "text", "text": "Bonjour"}], "usage": {"input_tokens": 9, "output_tokens": 4}}
    session = FakeSession((200, body))
    provider = ClaudeProvider("c-key", session=session, retry_policy=NO_WAIT)

    result = await provider.query("Hello", "claude-3-haiku")

    assert result.response == "Bonjour"
    assert (result.input_tokens, result.output_tokens, result.total_tokens) == (9, 4, 13)
    call = session.calls[0]
    assert call["url"] == "https://api.anthropic.com/v1/messages"
    assert call["headers"]["anthropic-version"] == "2023-06-01"
    assert call["json"]["model"] == "claude-3-haiku"


async def test_gemini_wire_format():
    body = {
        "candidates": [{"content": {"parts": [{"text": "Hola"}]}}],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1},
    }
    session = FakeSession((200, body))
    provider = GeminiProvider("g-key", session=session, retry_policy=NO_WAIT)

    result = await provider.query("Hello")

    assert result.response == "Hola"
    assert result.total_tokens == 4
    call = session.calls[0]
    assert call["url"] == "https://generativelanguage.googleapis.com/v1/models/gemini-1.5-pro:generateContent"
    assert call["params"] == {"key": "g-key"}
    assert "Authorization" not in call["headers"]
    assert call["json"]["contents"] == {"parts": [{"text": "Hello"}]}


async def test_gemini_without_usage_metadata_is_estimated():
    session = FakeSession((200, {"candidates": [{"content": {"parts": [{"text": "ABCDABCD"}]}}]}))
    provider = GeminiProvider("g-key", session=session, retry_policy=NO_WAIT)

    result = await provider.query("ABCDABCDABCD")

    assert (result.input_tokens, result.output_tokens, result.total_tokens) == (3, 2, 5)


async def test_mistral_uses_its_own_endpoint():
    session = FakeSession((200, OPENAI_OK))
    provider = MistralProvider("m-key", session=session, retry_policy=NO_WAIT)

    await provider.query("Hello")

    assert session.calls[0]["url"] == "https://api.mistral.ai/v1/chat/completions"
    assert session.calls[0]["json"]["model"] == "mistral-large-latest"


@pytest.mark.parametrize("provider_cls, name", [
    (OpenAIProvider, "OpenAI"),
    (GeminiProvider, "Gemini"),
    (MistralProvider, "Mistral"),
    (ClaudeProvider, "Claude"),
])
async def test_simulation_mode(provider_cls, name):
    session = FakeSession((500, "should not be called"))
    provider = provider_cls("test_key", session=session, retry_policy=NO_WAIT)

    result = await provider.query("ABCDABCD")

    assert result.response == (
        "This is a simulated response for testing purposes. "
        f"The actual {name} model is currently unavailable."
    )
    assert result.input_tokens == 2
    assert result.total_tokens == result.input_tokens + result.output_tokens
    assert await provider.check_availability() is True
    assert session.calls == []


async def test_check_availability():
    ok = OpenAIProvider("sk-live", session=FakeSession((200, {"data": []})))
    denied = OpenAIProvider("sk-bad", session=FakeSession((401, {"error": {"message": "bad key"}})))
    down = OpenAIProvider("sk-live", session=FakeSession(aiohttp.ClientConnectionError("refused")))
    keyless = OpenAIProvider("", session=FakeSession((200, {})))

    assert await ok.check_availability() is True
    assert await denied.check_availability() is False
    assert await down.check_availability() is False
    assert await keyless.check_availability() is False
    assert ok.session.calls[0]["method"] == "GET"
    assert ok.session.calls[0]["url"] == "https://api.openai.com/v1/models"


async def test_gemini_probe_uses_key_parameter():
    session = FakeSession((200, {"models": []}))
    provider = GeminiProvider("g-key", session=session)

    assert await provider.check_availability() is True
    assert session.calls[0]["params"] == {"key": "g-key"}


def test_backoff_grows_and_caps():
    policy = RetryPolicy(initial_backoff_ms=1000, max_backoff_ms=3000, backoff_multiplier=2.0, jitter=0)

    assert policy.backoff_seconds(1) == 1.0
    assert policy.backoff_seconds(2) == 2.0
    assert policy.backoff_seconds(3) == 3.0
    assert policy.backoff_seconds(10) == 3.0


def test_backoff_jitter_stays_in_band():
    policy = RetryPolicy(initial_backoff_ms=1000, jitter=0.1)
    for _ in range(100):
        assert 0.9 <= policy.backoff_seconds(1) <= 1.1


async def test_registry_lookup():
    registry = ProviderRegistry([OpenAIProvider("k"), ClaudeProvider("k")])

    assert registry.get(ProviderTag.CLAUDE).tag is ProviderTag.CLAUDE
    assert registry.tags() == [ProviderTag.OPENAI, ProviderTag.CLAUDE]
    assert len(registry) == 2
    with pytest.raises(ProviderError) as exc_info:
        registry.get(ProviderTag.GEMINI)
    assert exc_info.value.status_code == 503


async def test_initialize_and_cleanup_providers():
    settings = Settings(openai_api_key="test_openai", claude_api_key="sk-claude")

    registry = await initialize_providers(settings)
    try:
        assert registry.tags() == [ProviderTag.OPENAI, ProviderTag.GEMINI, ProviderTag.MISTRAL, ProviderTag.CLAUDE]
        assert registry.get(ProviderTag.OPENAI).simulated is True
        assert registry.get(ProviderTag.GEMINI).api_key == ""
        assert registry.get(ProviderTag.CLAUDE).session is registry.session
    finally:
        await cleanup_providers(registry)

    assert registry.session.closed
