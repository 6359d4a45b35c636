"""Position-list reconstruction: apply instructions item by item to pipe-delimited positions."""

from collections import Counter
from collections.abc import AsyncIterator
from dataclasses import dataclass

from app.chains.reconstruction_common import RunContext, complete_with_retry
from app.chains.reconstruction_prompts import DEFAULT_POSITION_INSTRUCTIONS, POSITION_BATCH_PROMPT
from app.core.errors import InvalidInput
from app.core.llm import parse_provider_json
from app.core.logging import get_logger
from app.core.schemas_reconstruction import JobInput, PositionBatchResponse, PositionListPlan, StreamEvent
from app.core.text_utils import is_table_separator, split_position_fields

logger = get_logger(__name__)

LINE_JOINER = "\n"


@dataclass(frozen=True)
class Position:
    index: int  # 1-based, in document order
    text: str
    fields: tuple[str, ...]


@dataclass
class ParsedPositions:
    positions: list[Position]
    malformed_lines: int
    field_count: int


def parse_positions(text: str) -> ParsedPositions:
    """
    Parse pipe-delimited lines into positions.

    The expected field count is the most common count among pipe lines.
    Lines with another count, lines without pipes and lines with empty fields
    are skipped and counted as malformed. Table separator rows are ignored.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip() and not is_table_separator(line)]
    split_lines = [(line, split_position_fields(line)) for line in lines]

    counts = Counter(len(fields) for line, fields in split_lines if "|" in line)
    field_count = counts.most_common(1)[0][0] if counts else 0

    positions: list[Position] = []
    malformed = 0
    for line, fields in split_lines:
        if "|" not in line or len(fields) != field_count or not all(fields):
            malformed += 1
            continue
        positions.append(Position(index=len(positions) + 1, text=line, fields=tuple(fields)))

    return ParsedPositions(positions=positions, malformed_lines=malformed, field_count=field_count)


def build_batch_prompt(batch: list[Position], instructions: str | None) -> str:
    return POSITION_BATCH_PROMPT.format(
        instructions=instructions or DEFAULT_POSITION_INSTRUCTIONS,
        positions="\n".join(f"{p.index}. {p.text}" for p in batch),
    )


def _selected_lines(selected: dict[int, str]) -> list[str]:
    return [selected[i] for i in sorted(selected)]


async def stream_position_list(
    ctx: RunContext,
    plan: PositionListPlan,
    job: JobInput,
) -> AsyncIterator[StreamEvent]:
    """
    Transform positions in batches, keeping the original relative order.

    Raises:
        InvalidInput: If no well-formed position is found
        ProviderError: If a batch exhausts its retry budget
    """
    parsed = parse_positions(job.text)
    if not parsed.positions:
        raise InvalidInput("No well-formed positions found in the input")
    if parsed.malformed_lines:
        logger.warning(f"Skipping {parsed.malformed_lines} malformed position lines", extra=ctx.log_extra)

    batch_size = max(1, ctx.settings.POSITION_BATCH_SIZE)
    batches = [
        parsed.positions[i : i + batch_size] for i in range(0, len(parsed.positions), batch_size)
    ]
    logger.info(
        f"Running position list: {len(parsed.positions)} positions in {len(batches)} batches",
        extra=ctx.log_extra,
    )

    selected: dict[int, str] = {}
    processed = 0

    for batch_no, batch in enumerate(batches):
        if ctx.abort_requested():
            yield ctx.aborted(LINE_JOINER.join(_selected_lines(selected)), batch_no)
            return

        response = await complete_with_retry(
            ctx,
            build_batch_prompt(batch, job.custom_instructions),
            parse=lambda raw: parse_provider_json(raw, PositionBatchResponse, provider=ctx.provider.name),
            unit=f"position batch {batch_no + 1}/{len(batches)}",
        )

        known = {p.index for p in batch}
        batch_selected: dict[int, str] = {}
        for item in response.selected:
            if item.index not in known or not item.text.strip():
                logger.debug(f"Dropping selection for position {item.index}", extra=ctx.log_extra)
                continue
            batch_selected[item.index] = item.text.strip()

        selected.update(batch_selected)
        processed += len(batch)
        batch_output = LINE_JOINER.join(_selected_lines(batch_selected))

        yield ctx.progress(
            "batch_complete",
            index=batch_no,
            total=len(batches),
            content=batch_output or None,
            message=f"{len(batch_selected)} of {len(batch)} positions selected",
            progress=processed / len(parsed.positions),
        )

    yield ctx.complete(
        LINE_JOINER.join(_selected_lines(selected)),
        job.text,
        chunks_processed=len(batches),
        positions_processed=processed,
        positions_selected=len(selected),
        total_positions=len(parsed.positions),
        malformed_lines=parsed.malformed_lines,
    )
