"""Direct-instruction reconstruction: one streamed provider call that follows the user's instructions."""

import asyncio
from collections.abc import AsyncIterator

from app.chains.reconstruction_common import RunContext
from app.chains.reconstruction_prompts import DIRECT_INSTRUCTION_PROMPT, optional_line
from app.core.logging import get_logger
from app.core.schemas_reconstruction import DirectInstructionPlan, JobInput, StreamEvent
from app.core.text_utils import clean_markup

logger = get_logger(__name__)


def build_direct_prompt(job: JobInput) -> str:
    return DIRECT_INSTRUCTION_PROMPT.format(
        instructions=job.custom_instructions or "",
        domain_line=optional_line("TARGET DOMAIN", job.target_domain),
        text=job.text,
    )


async def stream_direct_instruction(
    ctx: RunContext,
    plan: DirectInstructionPlan,
    job: JobInput,
) -> AsyncIterator[StreamEvent]:
    """
    Single attempt; any provider error fails the job.

    Raw tokens are forwarded as ``token`` progress events while the provider
    streams; the completion event carries the cleaned output.
    """
    logger.info("Running direct instruction", extra=ctx.log_extra)
    yield ctx.progress("generating", message="Applying instructions", total=1)

    if ctx.abort_requested():
        yield ctx.aborted("", 0)
        return

    tokens: asyncio.Queue = asyncio.Queue()
    call = asyncio.create_task(
        ctx.provider.complete_streaming(build_direct_prompt(job), ctx.options, tokens.put_nowait)
    )
    # None marks the end of the stream, success or failure
    call.add_done_callback(lambda _: tokens.put_nowait(None))

    try:
        while True:
            token = await tokens.get()
            if token is None:
                break
            yield ctx.progress("token", content=token)
        raw = await call
    finally:
        if not call.done():
            call.cancel()

    yield ctx.complete(clean_markup(raw), job.text)
