"""Outline-first chains: outline extraction and per-section regeneration.

The state machine that sequences these calls lives in
``app.graphs.outline_reconstruction_graph``.
"""

from app.chains.reconstruction_common import RunContext, complete_with_retry
from app.chains.reconstruction_prompts import (
    OUTLINE_AGGRESSIVE_RULE,
    OUTLINE_CONSERVATIVE_RULE,
    OUTLINE_EXTRACTION_PROMPT,
    OUTLINE_SECTION_PROMPT,
    optional_line,
)
from app.core.chunking import split_paragraphs, split_sentences
from app.core.errors import ProviderMalformedResponse
from app.core.llm import parse_provider_json
from app.core.logging import get_logger
from app.core.schemas_reconstruction import Outline
from app.core.text_utils import clean_markup

logger = get_logger(__name__)


def _partition(pieces: list[str], parts: int, joiner: str) -> list[str]:
    """Split pieces into ``parts`` contiguous, near-equal groups."""
    total = len(pieces)
    bounds = [round(i * total / parts) for i in range(parts + 1)]
    return [joiner.join(pieces[bounds[i] : bounds[i + 1]]) for i in range(parts)]


def source_regions(text: str, point_count: int) -> list[str]:
    """
    Map each outline key point to the slice of source text it came from.

    Paragraphs are divided proportionally across the points in order. With
    fewer paragraphs than points, sentences are divided instead; with fewer
    sentences than points, every section sees the whole text.
    """
    if point_count < 1:
        return []
    paragraphs = split_paragraphs(text)
    if len(paragraphs) >= point_count:
        return _partition(paragraphs, point_count, "\n\n")

    sentences = [s for p in paragraphs for s in split_sentences(p)]
    if len(sentences) >= point_count:
        return _partition(sentences, point_count, " ")

    return [text.strip()] * point_count


async def extract_outline(ctx: RunContext, text: str, instructions: str | None = None) -> Outline:
    """
    Extract the document outline with one provider call (retried on failure).

    Raises:
        ProviderError: If no usable outline came back within the retry budget
    """
    prompt = OUTLINE_EXTRACTION_PROMPT.format(
        instructions_line=optional_line("USER INSTRUCTIONS", instructions),
        text=text,
    )
    outline = await complete_with_retry(
        ctx,
        prompt,
        parse=lambda raw: parse_provider_json(raw, Outline, provider=ctx.provider.name),
        unit="outline extraction",
    )
    logger.info(
        f"Extracted outline with {len(outline.key_points)} key points",
        extra=ctx.log_extra,
    )
    return outline


def build_section_prompt(
    outline: Outline,
    index: int,
    region: str,
    aggressiveness: str,
    instructions: str | None = None,
) -> str:
    return OUTLINE_SECTION_PROMPT.format(
        thesis=outline.thesis,
        key_points="\n".join(f"{i + 1}. {point}" for i, point in enumerate(outline.key_points)),
        key_terms=", ".join(outline.key_terms) or "(none)",
        constraints="\n".join(f"- {c}" for c in outline.constraints) or "(none)",
        section_number=index + 1,
        section_count=len(outline.key_points),
        key_point=outline.key_points[index],
        aggressiveness=aggressiveness,
        mode_rule=OUTLINE_CONSERVATIVE_RULE if aggressiveness == "conservative" else OUTLINE_AGGRESSIVE_RULE,
        instructions_line=optional_line("USER INSTRUCTIONS", instructions),
        region=region,
    )


def _section_text(raw: str, provider: str) -> str:
    text = clean_markup(raw)
    if not text:
        raise ProviderMalformedResponse("Section response was empty after cleanup", provider=provider)
    return text


async def regenerate_section(
    ctx: RunContext,
    outline: Outline,
    index: int,
    region: str,
    aggressiveness: str,
    instructions: str | None = None,
) -> str:
    """Regenerate one outline section; up to PROVIDER_MAX_RETRIES retries with the same prompt."""
    prompt = build_section_prompt(outline, index, region, aggressiveness, instructions)
    return await complete_with_retry(
        ctx,
        prompt,
        parse=lambda raw: _section_text(raw, ctx.provider.name),
        unit=f"section {index + 1}/{len(outline.key_points)}",
    )
