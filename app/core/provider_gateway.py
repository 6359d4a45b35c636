"""Provider gateway: one interface over the LLM vendors used for reconstruction.

Strategies talk to ``TextProvider`` only. Concrete providers translate vendor
SDK failures into the gateway taxonomy (ProviderUnavailable,
ProviderRateLimited, ProviderMalformedResponse) and never retry on their own;
retry policy belongs to the calling strategy.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.core.config import Settings, get_settings
from app.core.errors import (
    InvalidInput,
    ProviderError,
    ProviderMalformedResponse,
    ProviderRateLimited,
    ProviderUnavailable,
)
from app.core.llm_usage import log_llm_usage
from app.core.logging import get_logger

if TYPE_CHECKING:
    from app.db.reconstruction_jobs import JobStore

logger = get_logger(__name__)

PROVIDER_ALIASES = {
    "zhi1": "openai",
    "zhi2": "anthropic",
    "zhi3": "deepseek",
    "zhi4": "perplexity",
    "zhi5": "grok",
}

SUPPORTED_PROVIDERS = ("anthropic", "openai", "deepseek", "grok", "perplexity")


@dataclass
class CompletionOptions:
    """Per-call options. ``model=None`` means the provider's default model."""

    model: str | None = None
    max_tokens: int = 4000
    temperature: float = 0.7
    timeout_seconds: float = 180.0
    system: str | None = None
    workflow: str = "reconstruction"
    job_id: str | None = None
    # Usage rows go here; None means the configured store
    store: JobStore | None = None


@dataclass
class CompletionResult:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class TextProvider(ABC):
    """Abstract text-completion capability."""

    name: str = "abstract"

    def __init__(self, default_model: str):
        self.default_model = default_model

    def _model(self, options: CompletionOptions) -> str:
        return options.model or self.default_model

    @abstractmethod
    async def _complete(self, prompt: str, options: CompletionOptions) -> CompletionResult:
        """Vendor call returning the full completion."""

    @abstractmethod
    def _stream(self, prompt: str, options: CompletionOptions) -> AsyncIterator[str]:
        """Vendor call yielding text deltas."""

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        """
        Submit a prompt and wait for the full completion.

        Raises:
            ProviderUnavailable: Transport/auth failure or timeout
            ProviderRateLimited: Vendor asked us to back off
            ProviderMalformedResponse: Empty or unusable response
        """
        options = options or CompletionOptions()
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._complete(prompt, options), timeout=options.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                f"{self.name} call timed out after {options.timeout_seconds}s", provider=self.name
            ) from e

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if not result.text or not result.text.strip():
            raise ProviderMalformedResponse(f"{self.name} returned an empty completion", provider=self.name)

        logger.debug(
            f"{self.name} completion: model={result.model} chars={len(result.text)} "
            f"in={result.input_tokens} out={result.output_tokens} {elapsed_ms}ms"
        )
        log_llm_usage(
            workflow=options.workflow,
            model=result.model,
            provider=self.name,
            tokens_input=result.input_tokens,
            tokens_output=result.output_tokens,
            duration_ms=elapsed_ms,
            job_id=options.job_id,
            store=options.store,
        )
        return result.text

    async def stream(self, prompt: str, options: CompletionOptions | None = None) -> AsyncIterator[str]:
        """
        Yield completion text incrementally.

        The whole stream shares one ``timeout_seconds`` budget.

        Raises:
            ProviderUnavailable: Transport/auth failure or the budget ran out
            ProviderRateLimited: Vendor asked us to back off
        """
        options = options or CompletionOptions()
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        deadline = t0 + options.timeout_seconds
        tokens = self._stream(prompt, options).__aiter__()
        chars = 0
        try:
            while True:
                try:
                    token = await asyncio.wait_for(tokens.__anext__(), timeout=max(deadline - loop.time(), 0))
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise ProviderUnavailable(
                        f"{self.name} stream timed out after {options.timeout_seconds}s", provider=self.name
                    ) from e
                if token:
                    chars += len(token)
                    yield token
        finally:
            aclose = getattr(tokens, "aclose", None)
            if aclose is not None:
                await aclose()

        elapsed_ms = int((loop.time() - t0) * 1000)
        logger.debug(f"{self.name} stream: model={self._model(options)} chars={chars} {elapsed_ms}ms")
        # Streaming responses carry no token counts
        log_llm_usage(
            workflow=options.workflow,
            model=self._model(options),
            provider=self.name,
            tokens_input=0,
            tokens_output=0,
            duration_ms=elapsed_ms,
            job_id=options.job_id,
            store=options.store,
        )

    async def complete_streaming(
        self,
        prompt: str,
        options: CompletionOptions | None,
        on_token: Callable[[str], None],
    ) -> str:
        """Stream a completion, handing each token to ``on_token``; returns the full text."""
        parts: list[str] = []
        async for token in self.stream(prompt, options):
            parts.append(token)
            on_token(token)
        text = "".join(parts)
        if not text.strip():
            raise ProviderMalformedResponse(f"{self.name} stream produced no text", provider=self.name)
        return text


# =============================================================================
# Anthropic
# =============================================================================


def _map_anthropic_error(e: Exception, provider: str) -> ProviderError:
    from anthropic import APIConnectionError, APIStatusError, RateLimitError

    if isinstance(e, RateLimitError):
        return ProviderRateLimited(f"{provider} rate limited: {e}", provider=provider)
    if isinstance(e, APIConnectionError):
        return ProviderUnavailable(f"{provider} connection failed: {e}", provider=provider)
    if isinstance(e, APIStatusError):
        return ProviderUnavailable(f"{provider} returned HTTP {e.status_code}: {e}", provider=provider)
    return ProviderUnavailable(f"{provider} call failed: {e}", provider=provider)


class AnthropicProvider(TextProvider):
    name = "anthropic"

    def __init__(self, api_key: str, default_model: str, client=None):
        super().__init__(default_model)
        if client is None:
            from anthropic import AsyncAnthropic

            client = AsyncAnthropic(api_key=api_key, max_retries=0)
        self.client = client

    def _request_kwargs(self, prompt: str, options: CompletionOptions) -> dict:
        kwargs = {
            "model": self._model(options),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": options.timeout_seconds,
        }
        if options.system:
            kwargs["system"] = options.system
        return kwargs

    async def _complete(self, prompt: str, options: CompletionOptions) -> CompletionResult:
        from anthropic import AnthropicError

        try:
            response = await self.client.messages.create(**self._request_kwargs(prompt, options))
        except AnthropicError as e:
            raise _map_anthropic_error(e, self.name) from e

        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        usage = getattr(response, "usage", None)
        return CompletionResult(
            text=text,
            model=getattr(response, "model", None) or self._model(options),
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

    async def _stream(self, prompt: str, options: CompletionOptions) -> AsyncIterator[str]:
        from anthropic import AnthropicError

        try:
            async with self.client.messages.stream(**self._request_kwargs(prompt, options)) as stream:
                async for text in stream.text_stream:
                    yield text
        except AnthropicError as e:
            raise _map_anthropic_error(e, self.name) from e


# =============================================================================
# OpenAI and OpenAI-compatible vendors (DeepSeek, Grok, Perplexity)
# =============================================================================


def _map_openai_error(e: Exception, provider: str) -> ProviderError:
    from openai import APIConnectionError, APIStatusError, RateLimitError

    if isinstance(e, RateLimitError):
        return ProviderRateLimited(f"{provider} rate limited: {e}", provider=provider)
    if isinstance(e, APIConnectionError):
        return ProviderUnavailable(f"{provider} connection failed: {e}", provider=provider)
    if isinstance(e, APIStatusError):
        return ProviderUnavailable(f"{provider} returned HTTP {e.status_code}: {e}", provider=provider)
    return ProviderUnavailable(f"{provider} call failed: {e}", provider=provider)


class OpenAICompatibleProvider(TextProvider):
    def __init__(
        self,
        name: str,
        api_key: str,
        default_model: str,
        base_url: str | None = None,
        client=None,
    ):
        super().__init__(default_model)
        self.name = name
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self.client = client

    def _messages(self, prompt: str, options: CompletionOptions) -> list[dict]:
        messages = []
        if options.system:
            messages.append({"role": "system", "content": options.system})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _complete(self, prompt: str, options: CompletionOptions) -> CompletionResult:
        from openai import OpenAIError

        try:
            response = await self.client.chat.completions.create(
                model=self._model(options),
                messages=self._messages(prompt, options),
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                timeout=options.timeout_seconds,
            )
        except OpenAIError as e:
            raise _map_openai_error(e, self.name) from e

        if not response.choices:
            raise ProviderMalformedResponse(f"{self.name} returned no choices", provider=self.name)
        usage = getattr(response, "usage", None)
        return CompletionResult(
            text=response.choices[0].message.content or "",
            model=getattr(response, "model", None) or self._model(options),
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    async def _stream(self, prompt: str, options: CompletionOptions) -> AsyncIterator[str]:
        from openai import OpenAIError

        try:
            response = await self.client.chat.completions.create(
                model=self._model(options),
                messages=self._messages(prompt, options),
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                timeout=options.timeout_seconds,
                stream=True,
            )
            async for part in response:
                delta = part.choices[0].delta.content if part.choices else None
                if delta:
                    yield delta
        except OpenAIError as e:
            raise _map_openai_error(e, self.name) from e


# =============================================================================
# Registry
# =============================================================================


def resolve_provider_name(name: str | None, settings: Settings | None = None) -> str:
    """Map a requested provider (or zhi alias) to a supported provider name."""
    settings = settings or get_settings()
    requested = (name or settings.DEFAULT_PROVIDER).strip().lower()
    resolved = PROVIDER_ALIASES.get(requested, requested)
    if resolved not in SUPPORTED_PROVIDERS:
        raise InvalidInput(f"Unknown provider '{name}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
    return resolved


def _provider_credentials(settings: Settings) -> dict[str, tuple[str, str, str | None]]:
    """provider -> (api_key, default_model, base_url)"""
    return {
        "anthropic": (settings.ANTHROPIC_API_KEY, settings.ANTHROPIC_MODEL, None),
        "openai": (settings.OPENAI_API_KEY, settings.OPENAI_MODEL, None),
        "deepseek": (settings.DEEPSEEK_API_KEY, settings.DEEPSEEK_MODEL, settings.DEEPSEEK_BASE_URL),
        "grok": (settings.GROK_API_KEY, settings.GROK_MODEL, settings.GROK_BASE_URL),
        "perplexity": (settings.PERPLEXITY_API_KEY, settings.PERPLEXITY_MODEL, settings.PERPLEXITY_BASE_URL),
    }


def get_provider(name: str | None = None, settings: Settings | None = None) -> TextProvider:
    """
    Build the provider for ``name`` (default provider when None).

    Raises:
        InvalidInput: Unknown provider name
        ProviderUnavailable: Provider has no API key configured
    """
    settings = settings or get_settings()
    resolved = resolve_provider_name(name, settings)
    api_key, model, base_url = _provider_credentials(settings)[resolved]
    if not api_key:
        raise ProviderUnavailable(f"{resolved} API key is not configured", provider=resolved)

    if resolved == "anthropic":
        return AnthropicProvider(api_key=api_key, default_model=model)
    return OpenAICompatibleProvider(name=resolved, api_key=api_key, default_model=model, base_url=base_url)


def provider_status(settings: Settings | None = None) -> dict[str, str]:
    """Report which providers have credentials configured."""
    settings = settings or get_settings()
    return {
        provider: "configured" if api_key else "missing"
        for provider, (api_key, _model, _url) in _provider_credentials(settings).items()
    }
