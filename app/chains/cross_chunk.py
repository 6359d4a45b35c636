"""Cross-chunk coherence reconstruction.

The document is chunked, and each chunk is rewritten with the running
``GlobalState`` in the prompt. Every chunk result and the merged state are
persisted before the next chunk starts, so an aborted or crashed job can be
resumed from the first unfinished chunk.
"""

import json
from collections.abc import AsyncIterator

from app.chains.reconstruction_common import RunContext, complete_with_retry
from app.chains.reconstruction_prompts import (
    CROSS_CHUNK_PROMPT,
    OUTLINE_AGGRESSIVE_RULE,
    OUTLINE_CONSERVATIVE_RULE,
    optional_line,
)
from app.core.chunking import PARAGRAPH_JOINER, chunk_document
from app.core.errors import ProviderMalformedResponse
from app.core.llm import parse_provider_json
from app.core.logging import get_logger
from app.core.schemas_reconstruction import (
    Chunk,
    ChunkRecord,
    CrossChunkPlan,
    CrossChunkResponse,
    GlobalState,
    JobInput,
    StreamEvent,
)
from app.core.text_utils import clean_markup, count_words

logger = get_logger(__name__)


def build_chunk_prompt(
    chunk: Chunk,
    chunk_count: int,
    state: GlobalState,
    aggressiveness: str,
    instructions: str | None = None,
) -> str:
    return CROSS_CHUNK_PROMPT.format(
        chunk_number=chunk.index + 1,
        chunk_count=chunk_count,
        global_state=json.dumps(state.prompt_view(), indent=2),
        aggressiveness=aggressiveness,
        mode_rule=OUTLINE_CONSERVATIVE_RULE if aggressiveness == "conservative" else OUTLINE_AGGRESSIVE_RULE,
        instructions_line=optional_line("USER INSTRUCTIONS", instructions),
        chunk=chunk.text,
    )


def _parse_chunk_response(raw: str, provider: str) -> CrossChunkResponse:
    response = parse_provider_json(raw, CrossChunkResponse, provider=provider)
    section_output = clean_markup(response.section_output)
    if not section_output:
        raise ProviderMalformedResponse("Chunk response has an empty section_output", provider=provider)
    return response.model_copy(update={"section_output": section_output})


def _stitch(outputs: dict[int, str]) -> str:
    return PARAGRAPH_JOINER.join(outputs[i] for i in sorted(outputs))


async def stream_cross_chunk(
    ctx: RunContext,
    plan: CrossChunkPlan,
    job: JobInput,
    completed_outputs: dict[int, str] | None = None,
    global_state: GlobalState | None = None,
) -> AsyncIterator[StreamEvent]:
    """
    Rewrite a long document chunk by chunk with cross-chunk memory.

    Args:
        ctx: Run context
        plan: Cross-chunk plan (chunk size, aggressiveness)
        job: Job input
        completed_outputs: Outputs already produced by an earlier run, by chunk index
        global_state: Persisted state from an earlier run; reused as-is on resume

    Yields:
        progress per chunk, then complete or aborted

    Raises:
        ProviderError: If a chunk exhausts its retry budget
    """
    chunks = chunk_document(job.text, plan.max_words_per_chunk)
    total = len(chunks)
    outputs: dict[int, str] = dict(completed_outputs or {})
    state = global_state or GlobalState()
    state = state.model_copy(update={"provider": ctx.provider.name, "session_id": ctx.job_id})

    start_index = max(outputs) + 1 if outputs else 0
    cumulative = sum(count_words(text) for text in outputs.values())

    logger.info(
        f"Running cross-chunk reconstruction: {total} chunks, starting at {start_index}",
        extra=ctx.log_extra,
    )
    yield ctx.progress(
        "chunked",
        message=f"Document split into {total} chunks",
        total=total,
        index=start_index if start_index else None,
        cumulative_word_count=cumulative,
        progress=start_index / total if total else 0.0,
    )

    for chunk in chunks[start_index:]:
        if ctx.abort_requested():
            yield ctx.aborted(_stitch(outputs), len(outputs))
            return

        prompt = build_chunk_prompt(
            chunk, total, state, plan.aggressiveness, job.custom_instructions
        )
        response = await complete_with_retry(
            ctx,
            prompt,
            parse=lambda raw: _parse_chunk_response(raw, ctx.provider.name),
            unit=f"chunk {chunk.index + 1}/{total}",
        )

        outputs[chunk.index] = response.section_output
        state = state.apply_update(response.updated_state)
        state = state.model_copy(update={"chunk_outputs": dict(outputs)})

        ctx.store.append_chunk(
            ChunkRecord(
                job_id=ctx.job_id,
                chunk_index=chunk.index,
                input_text=chunk.text,
                output_text=response.section_output,
                word_count=count_words(response.section_output),
            )
        )
        ctx.store.write_global_state(ctx.job_id, state)

        cumulative += count_words(response.section_output)
        logger.info(
            f"Chunk {chunk.index + 1}/{total} complete ({cumulative} words so far)",
            extra={**ctx.log_extra, "chunk_index": chunk.index},
        )
        yield ctx.progress(
            "chunk_complete",
            index=chunk.index,
            total=total,
            content=response.section_output,
            cumulative_word_count=cumulative,
            progress=(chunk.index + 1) / total,
        )

    yield ctx.complete(
        _stitch(outputs),
        job.text,
        chunks_processed=len(outputs),
        aggressiveness=plan.aggressiveness,
        total_chunks=total,
        resumed_from=start_index or None,
        global_state=state.prompt_view(),
    )
