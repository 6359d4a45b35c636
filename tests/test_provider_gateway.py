"""Tests for the provider gateway (SDK clients mocked)."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from app.core.errors import (
    InvalidInput,
    ProviderMalformedResponse,
    ProviderRateLimited,
    ProviderUnavailable,
)
from app.core.provider_gateway import (
    AnthropicProvider,
    CompletionOptions,
    OpenAICompatibleProvider,
    get_provider,
    provider_status,
    resolve_provider_name,
)
from tests.fakes.fake_provider import FakeProvider


class _AsyncIterator:
    """Async iterator wrapper for mocking ``async for`` loops."""

    def __init__(self, items):
        self._items = list(items)
        self._idx = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._idx >= len(self._items):
            raise StopAsyncIteration
        item = self._items[self._idx]
        self._idx += 1
        return item


def _anthropic_response(text: str):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        model="claude-test",
        usage=SimpleNamespace(input_tokens=12, output_tokens=5),
    )


def _openai_response(text: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        model="gpt-test",
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=5),
    )


def _anthropic_provider(create):
    client = MagicMock()
    client.messages.create = create
    return AnthropicProvider(api_key="test", default_model="claude-test", client=client), client


# ──────────────────────────────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "requested,expected",
    [
        ("zhi1", "openai"),
        ("zhi2", "anthropic"),
        ("zhi3", "deepseek"),
        ("zhi4", "perplexity"),
        ("zhi5", "grok"),
        ("Anthropic", "anthropic"),
        (None, "anthropic"),
    ],
)
def test_resolve_provider_name(settings, requested, expected):
    assert resolve_provider_name(requested, settings) == expected


def test_resolve_unknown_provider(settings):
    with pytest.raises(InvalidInput):
        resolve_provider_name("zhi9", settings)


def test_get_provider_builds_configured_providers(settings):
    assert isinstance(get_provider("zhi2", settings), AnthropicProvider)

    openai_provider = get_provider("zhi1", settings)
    assert isinstance(openai_provider, OpenAICompatibleProvider)
    assert openai_provider.name == "openai"
    assert openai_provider.default_model == settings.OPENAI_MODEL


def test_get_provider_without_key(settings):
    with pytest.raises(ProviderUnavailable) as exc_info:
        get_provider("deepseek", settings)
    assert exc_info.value.provider == "deepseek"


def test_provider_status(settings):
    status = provider_status(settings)
    assert status["anthropic"] == "configured"
    assert status["openai"] == "configured"
    assert status["grok"] == "missing"


# ──────────────────────────────────────────────────────────────────────
# Anthropic
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_anthropic_complete():
    provider, client = _anthropic_provider(AsyncMock(return_value=_anthropic_response("hello there")))

    text = await provider.complete("prompt", CompletionOptions(system="be brief", max_tokens=100))

    assert text == "hello there"
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["system"] == "be brief"
    assert kwargs["max_tokens"] == 100
    assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]


@pytest.mark.asyncio
async def test_anthropic_rate_limit_is_mapped():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    error = anthropic.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    provider, _ = _anthropic_provider(AsyncMock(side_effect=error))

    with pytest.raises(ProviderRateLimited) as exc_info:
        await provider.complete("prompt")
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_anthropic_connection_error_is_unavailable():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    provider, _ = _anthropic_provider(AsyncMock(side_effect=anthropic.APIConnectionError(request=request)))

    with pytest.raises(ProviderUnavailable):
        await provider.complete("prompt")


@pytest.mark.asyncio
async def test_empty_completion_is_malformed():
    provider, _ = _anthropic_provider(AsyncMock(return_value=_anthropic_response("   ")))

    with pytest.raises(ProviderMalformedResponse):
        await provider.complete("prompt")


@pytest.mark.asyncio
async def test_timeout_is_unavailable():
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return _anthropic_response("too late")

    provider, _ = _anthropic_provider(AsyncMock(side_effect=slow))

    with pytest.raises(ProviderUnavailable):
        await provider.complete("prompt", CompletionOptions(timeout_seconds=0.01))


# ──────────────────────────────────────────────────────────────────────
# OpenAI-compatible
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_openai_complete_sends_system_message():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_openai_response("hi"))
    provider = OpenAICompatibleProvider(name="openai", api_key="test", default_model="gpt-test", client=client)

    text = await provider.complete("prompt", CompletionOptions(system="sys", model="gpt-other"))

    assert text == "hi"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-other"
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_openai_rate_limit_is_mapped():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=error)
    provider = OpenAICompatibleProvider(name="deepseek", api_key="test", default_model="deepseek-chat", client=client)

    with pytest.raises(ProviderRateLimited) as exc_info:
        await provider.complete("prompt")
    assert exc_info.value.provider == "deepseek"


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas():
    parts = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"))]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="lo"))]),
    ]
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_AsyncIterator(parts))
    provider = OpenAICompatibleProvider(name="openai", api_key="test", default_model="gpt-test", client=client)

    tokens = [token async for token in provider.stream("prompt")]

    assert tokens == ["Hel", "lo"]
    assert client.chat.completions.create.call_args.kwargs["stream"] is True


# ──────────────────────────────────────────────────────────────────────
# Streaming helper and usage logging
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_complete_streaming_collects_tokens():
    provider = FakeProvider(responses=["A streamed completion of some length."])
    seen = []

    text = await provider.complete_streaming("prompt", None, seen.append)

    assert text == "A streamed completion of some length."
    assert "".join(seen) == text
    assert len(seen) > 1


@pytest.mark.asyncio
async def test_complete_logs_usage(store, monkeypatch):
    monkeypatch.setattr("app.db.reconstruction_jobs.get_job_store", lambda: store)
    provider = FakeProvider(responses=["done"])

    await provider.complete("prompt", CompletionOptions(job_id="job-7", workflow="diagnostic"))

    assert len(store.llm_calls) == 1
    row = store.llm_calls[0]
    assert row["job_id"] == "job-7"
    assert row["provider"] == "fake"
    assert row["tokens_input"] == 10


@pytest.mark.asyncio
async def test_usage_goes_to_store_in_options(store):
    provider = FakeProvider(responses=["done", "streamed"])

    await provider.complete("prompt", CompletionOptions(job_id="job-8", store=store))
    await provider.complete_streaming("prompt", CompletionOptions(job_id="job-8", store=store), lambda token: None)

    assert [row["job_id"] for row in store.llm_calls] == ["job-8", "job-8"]


@pytest.mark.asyncio
async def test_stream_timeout_is_mapped():
    provider = FakeProvider(responses=["slow"], latency=lambda prompt: 1.0)

    with pytest.raises(ProviderUnavailable):
        async for _ in provider.stream("prompt", CompletionOptions(timeout_seconds=0.01)):
            pass
