"""Shared plumbing for reconstruction strategies: run context, event helpers, retrying calls."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from app.chains.reconstruction_prompts import SYSTEM_PROMPT
from app.core.config import Settings
from app.core.errors import ProviderError
from app.core.logging import get_logger
from app.core.provider_gateway import CompletionOptions, TextProvider
from app.core.schemas_reconstruction import AbortedEvent, CompleteEvent, ProgressEvent
from app.core.session_registry import SessionRegistry
from app.core.text_utils import count_words
from app.db.reconstruction_jobs import JobStore

logger = get_logger(__name__)

T = TypeVar("T")


def default_options(settings: Settings, job_id: str | None = None, store: JobStore | None = None) -> CompletionOptions:
    return CompletionOptions(
        max_tokens=settings.PROVIDER_MAX_TOKENS,
        temperature=settings.PROVIDER_TEMPERATURE,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        system=SYSTEM_PROMPT,
        job_id=job_id,
        store=store,
    )


@dataclass
class RunContext:
    """Everything a strategy needs for one job run."""

    job_id: str
    strategy: str
    provider: TextProvider
    registry: SessionRegistry
    store: JobStore
    settings: Settings
    options: CompletionOptions | None = None

    def __post_init__(self):
        if self.options is None:
            self.options = default_options(self.settings, self.job_id, self.store)

    @property
    def log_extra(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "strategy": self.strategy, "provider": self.provider.name}

    def abort_requested(self) -> bool:
        return self.registry.is_abort_requested(self.job_id)

    def with_options(self, **changes: Any) -> CompletionOptions:
        return replace(self.options, **changes)

    def progress(self, stage: str, **fields: Any) -> ProgressEvent:
        return ProgressEvent(session_id=self.job_id, strategy=self.strategy, stage=stage, **fields)

    def aborted(self, partial_output: str, chunks_processed: int) -> AbortedEvent:
        logger.info(
            f"Run aborted after {chunks_processed} units",
            extra=self.log_extra,
        )
        return AbortedEvent(
            session_id=self.job_id,
            strategy=self.strategy,
            partial_output=partial_output,
            chunks_processed=chunks_processed,
            word_count=count_words(partial_output),
        )

    def complete(self, output: str, input_text: str, chunks_processed: int = 1, **details: Any) -> CompleteEvent:
        return CompleteEvent(
            session_id=self.job_id,
            strategy=self.strategy,
            output=output,
            input_word_count=count_words(input_text),
            output_word_count=count_words(output),
            chunks_processed=chunks_processed,
            details=details,
        )


async def complete_with_retry(
    ctx: RunContext,
    prompt: str,
    parse: Callable[[str], T] | None = None,
    unit: str = "provider call",
    options: CompletionOptions | None = None,
    max_retries: int | None = None,
) -> T | str:
    """
    Call the provider, retrying provider failures with exponential backoff.

    Parse failures count as provider failures (ProviderMalformedResponse), so
    a response that cannot be parsed is retried with the same prompt. A failed
    attempt is not retried once the job has been asked to abort.

    Args:
        ctx: Run context
        prompt: Prompt text
        parse: Optional parser applied to the raw completion
        unit: Label for log lines ("section 3", "chunk 7", ...)
        options: Completion options (defaults to the context's)
        max_retries: Retry budget (defaults to PROVIDER_MAX_RETRIES)

    Returns:
        Parsed result, or the raw completion when no parser is given

    Raises:
        ProviderError: When every attempt failed
    """
    retries = ctx.settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
    delay = ctx.settings.PROVIDER_RETRY_BASE_DELAY

    for attempt in range(retries + 1):
        try:
            raw = await ctx.provider.complete(prompt, options or ctx.options)
            return parse(raw) if parse else raw
        except ProviderError as e:
            if attempt < retries and ctx.abort_requested():
                logger.info(f"{unit} failed after abort was requested; not retrying", extra=ctx.log_extra)
                raise
            if attempt < retries:
                wait = delay * (2**attempt)
                logger.warning(
                    f"{unit} attempt {attempt + 1}/{retries + 1} failed: {e}. Retry in {wait}s",
                    extra=ctx.log_extra,
                )
                if wait > 0:
                    await asyncio.sleep(wait)
            else:
                logger.error(f"{unit}: all {retries + 1} attempts failed: {e}", extra=ctx.log_extra)
                raise
