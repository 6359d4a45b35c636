"""Universal expansion: grow a document section by section until it reaches a target word count."""

import math
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

from app.chains.reconstruction_common import RunContext, complete_with_retry
from app.chains.reconstruction_prompts import (
    EXPANSION_AGGRESSIVE_RULE,
    EXPANSION_CONSERVATIVE_RULE,
    EXPANSION_SECTION_PROMPT,
    optional_line,
)
from app.core.logging import get_logger
from app.core.schemas_reconstruction import (
    AbortedEvent,
    CompleteEvent,
    JobInput,
    ProgressEvent,
    StreamEvent,
    UniversalExpansionPlan,
)
from app.core.text_utils import clean_markup, count_words

logger = get_logger(__name__)

SECTION_JOINER = "\n\n"
MAX_TITLE_WORDS = 12
PREVIOUS_TAIL_WORDS = 150


def estimate_sections(target_word_count: int, section_words: int) -> int:
    return max(1, math.ceil(target_word_count / max(1, section_words)))


def split_title(section: str) -> tuple[str | None, str]:
    """Separate a leading title line (short, no terminal punctuation) from the section body."""
    lines = section.strip().splitlines()
    if len(lines) < 2:
        return None, section.strip()
    first = lines[0].strip().strip("#*").strip()
    if first and count_words(first) <= MAX_TITLE_WORDS and first[-1] not in ".!?":
        return first.rstrip(":"), "\n".join(lines[1:]).strip()
    return None, section.strip()


def build_section_prompt(
    job: JobInput,
    plan: UniversalExpansionPlan,
    section_number: int,
    estimated_sections: int,
    section_words: int,
    written_words: int,
    titles: list[str],
    previous: str,
) -> str:
    tail = " ".join(previous.split()[-PREVIOUS_TAIL_WORDS:])
    return EXPANSION_SECTION_PROMPT.format(
        target_words=plan.target_word_count,
        section_number=section_number,
        estimated_sections=estimated_sections,
        section_words=section_words,
        written_words=written_words,
        aggressiveness=plan.aggressiveness,
        mode_rule=EXPANSION_CONSERVATIVE_RULE if plan.aggressiveness == "conservative" else EXPANSION_AGGRESSIVE_RULE,
        instructions_line=optional_line("USER INSTRUCTIONS", job.custom_instructions),
        previous_titles="\n".join(f"- {t}" for t in titles) or "(none yet)",
        previous_tail=tail or "(none yet)",
        text=job.text,
    )


async def stream_universal_expansion(
    ctx: RunContext,
    plan: UniversalExpansionPlan,
    job: JobInput,
) -> AsyncIterator[StreamEvent]:
    """
    Generate sections until the cumulative word count reaches the target.

    The final section may overshoot. Attempts are bounded at twice the
    estimated section count; sections under EXPANSION_MIN_SECTION_WORDS count
    as stalled attempts. Falling short is reported (a ``shortfall`` progress
    event and ``shortfall: true`` on completion), never silently.

    Raises:
        ProviderError: If a section exhausts its retry budget
    """
    started = time.monotonic()
    settings = ctx.settings
    target = plan.target_word_count
    estimated = estimate_sections(target, settings.EXPANSION_SECTION_WORDS)
    max_attempts = max(2, 2 * estimated)

    logger.info(
        f"Running universal expansion: target {target} words (~{estimated} sections, "
        f"at most {max_attempts} attempts)",
        extra=ctx.log_extra,
    )
    yield ctx.progress(
        "planned",
        message=f"Expanding to {target} words",
        total=estimated,
    )

    sections: list[dict[str, Any]] = []
    cumulative = 0
    attempts = 0
    stalled = 0

    while cumulative < target and attempts < max_attempts:
        if ctx.abort_requested():
            yield ctx.aborted(SECTION_JOINER.join(s["content"] for s in sections), len(sections))
            return

        attempts += 1
        remaining = target - cumulative
        section_words = max(settings.EXPANSION_MIN_SECTION_WORDS, min(settings.EXPANSION_SECTION_WORDS, remaining))
        prompt = build_section_prompt(
            job,
            plan,
            section_number=len(sections) + 1,
            estimated_sections=max(estimated, len(sections) + 1),
            section_words=section_words,
            written_words=cumulative,
            titles=[s["title"] for s in sections],
            previous=sections[-1]["content"] if sections else "",
        )
        raw = await complete_with_retry(ctx, prompt, unit=f"expansion section {len(sections) + 1}")
        title, body = split_title(clean_markup(raw))
        words = count_words(body)

        if words < settings.EXPANSION_MIN_SECTION_WORDS:
            stalled += 1
            logger.warning(
                f"Expansion attempt {attempts}/{max_attempts} stalled ({words} words)",
                extra=ctx.log_extra,
            )
            continue

        index = len(sections)
        title = title or f"Section {index + 1}"
        sections.append({"title": title, "content": body, "word_count": words})
        cumulative += words
        total_estimate = max(estimated, len(sections))

        yield ctx.progress(
            "section_complete",
            index=index,
            total=total_estimate,
            title=title,
            content=body,
            cumulative_word_count=cumulative,
            progress=min(1.0, cumulative / target),
        )

    expanded_text = SECTION_JOINER.join(s["content"] for s in sections)
    details: dict[str, Any] = {
        "expanded_text": expanded_text,
        "input_word_count": count_words(job.text),
        "output_word_count": count_words(expanded_text),
        "sections_generated": len(sections),
        "target_word_count": target,
        "target_source": plan.target_source,
        "aggressiveness": plan.aggressiveness,
        "stalled_attempts": stalled,
        "section_titles": [s["title"] for s in sections],
    }

    if cumulative < target:
        shortfall = target - cumulative
        logger.warning(
            f"Expansion stopped {shortfall} words short of {target} after {attempts} attempts",
            extra=ctx.log_extra,
        )
        yield ctx.progress(
            "shortfall",
            message=f"Stopped {shortfall} words short of the {target}-word target",
            cumulative_word_count=cumulative,
            progress=cumulative / target,
        )
        details.update(shortfall=True, shortfall_words=shortfall)

    details["processing_time_ms"] = int((time.monotonic() - started) * 1000)
    yield ctx.complete(expanded_text, job.text, chunks_processed=len(sections), **details)


async def universal_expand(
    ctx: RunContext,
    plan: UniversalExpansionPlan,
    job: JobInput,
    on_chunk: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """
    Run an expansion to completion, calling ``on_chunk`` after each section.

    Returns:
        Dict with expanded_text, input_word_count, output_word_count,
        sections_generated and processing_time_ms (plus shortfall fields,
        or aborted=True with the partial text)
    """
    async for event in stream_universal_expansion(ctx, plan, job):
        if isinstance(event, ProgressEvent) and event.stage == "section_complete" and on_chunk:
            on_chunk(
                {
                    "section_title": event.title,
                    "section_content": event.content,
                    "section_index": event.index,
                    "total_sections": event.total,
                    "progress": event.progress,
                    "cumulative_word_count": event.cumulative_word_count,
                }
            )
        elif isinstance(event, CompleteEvent):
            return event.details
        elif isinstance(event, AbortedEvent):
            return {
                "expanded_text": event.partial_output,
                "input_word_count": count_words(job.text),
                "output_word_count": event.word_count,
                "sections_generated": event.chunks_processed,
                "aborted": True,
            }
    raise RuntimeError("Expansion stream ended without a terminal event")
