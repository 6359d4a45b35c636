"""Outline-first reconstruction LangGraph.

extract_outline -> regenerate_sections (loops until every key point is done)
-> stitch. An abort request stops the loop at the next section boundary.
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from app.chains.outline_first import extract_outline, regenerate_section, source_regions
from app.chains.reconstruction_common import RunContext
from app.core.logging import get_logger
from app.core.schemas_reconstruction import JobInput, OutlineFirstPlan, Outline, StreamEvent
from app.core.text_utils import count_words

logger = get_logger(__name__)

MAX_STEPS = 1000  # Safety cap: one step per section batch plus extract and stitch

SECTION_JOINER = "\n\n"


@dataclass
class OutlineReconstructionState:
    """State for the outline-first graph."""

    # Input
    text: str
    aggressiveness: str = "aggressive"
    instructions: str | None = None

    # Processing
    outline: Outline | None = None
    regions: list[str] = field(default_factory=list)
    section_outputs: list[str] = field(default_factory=list)
    aborted: bool = False

    # Output
    output: str = ""


def _run(config: dict[str, Any]) -> RunContext:
    return config["configurable"]["run"]


async def extract_outline_node(state: OutlineReconstructionState, config) -> dict[str, Any]:
    """One provider call over the whole input. Failure here fails the job."""
    ctx = _run(config)
    outline = await extract_outline(ctx, state.text, state.instructions)
    return {
        "outline": outline,
        "regions": source_regions(state.text, len(outline.key_points)),
    }


async def regenerate_sections_node(state: OutlineReconstructionState, config) -> dict[str, Any]:
    """Regenerate the next batch of sections, keeping outline order."""
    ctx = _run(config)
    if ctx.abort_requested():
        return {"aborted": True}

    concurrency = max(1, ctx.settings.OUTLINE_SECTION_CONCURRENCY)
    start = len(state.section_outputs)
    indices = range(start, min(start + concurrency, len(state.outline.key_points)))

    outputs = await asyncio.gather(
        *(
            regenerate_section(
                ctx,
                state.outline,
                i,
                state.regions[i],
                state.aggressiveness,
                state.instructions,
            )
            for i in indices
        )
    )
    return {"section_outputs": state.section_outputs + list(outputs)}


def stitch_node(state: OutlineReconstructionState) -> dict[str, Any]:
    """Join sections in outline order. No provider call."""
    return {"output": SECTION_JOINER.join(state.section_outputs)}


def should_continue(state: OutlineReconstructionState) -> str:
    if state.aborted:
        return "end"
    if len(state.section_outputs) < len(state.outline.key_points):
        return "regenerate_sections"
    return "stitch"


def _build_graph() -> StateGraph:
    """Build the LangGraph for outline-first reconstruction."""
    graph = StateGraph(OutlineReconstructionState)

    graph.add_node("extract_outline", extract_outline_node)
    graph.add_node("regenerate_sections", regenerate_sections_node)
    graph.add_node("stitch", stitch_node)

    graph.set_entry_point("extract_outline")
    graph.add_edge("extract_outline", "regenerate_sections")
    graph.add_conditional_edges(
        "regenerate_sections",
        should_continue,
        {
            "regenerate_sections": "regenerate_sections",
            "stitch": "stitch",
            "end": END,
        },
    )
    graph.add_edge("stitch", END)

    return graph


# Compile the graph once at module load
_compiled_graph = _build_graph().compile()


async def stream_outline_first(
    ctx: RunContext,
    plan: OutlineFirstPlan,
    job: JobInput,
) -> AsyncIterator[StreamEvent]:
    """
    Run the outline-first graph and translate node updates into stream events.

    Yields:
        progress (outline, then one per section), then complete or aborted

    Raises:
        ProviderError: If outline extraction or a section exhausts its retries
    """
    logger.info(f"Running outline-first reconstruction ({plan.aggressiveness})", extra=ctx.log_extra)

    if ctx.abort_requested():
        yield ctx.aborted("", 0)
        return

    initial_state = OutlineReconstructionState(
        text=job.text,
        aggressiveness=plan.aggressiveness,
        instructions=job.custom_instructions,
    )
    config = {"configurable": {"run": ctx}, "recursion_limit": MAX_STEPS}

    outline: Outline | None = None
    sections: list[str] = []
    cumulative = 0

    async for update in _compiled_graph.astream(initial_state, config=config, stream_mode="updates"):
        for node, values in update.items():
            if not values:
                continue

            if node == "extract_outline":
                outline = values["outline"]
                yield ctx.progress(
                    "outline",
                    message=f"Outline extracted: {len(outline.key_points)} sections",
                    total=len(outline.key_points),
                )

            elif node == "regenerate_sections":
                if values.get("aborted"):
                    yield ctx.aborted(SECTION_JOINER.join(sections), len(sections))
                    return
                total = len(outline.key_points)
                for index in range(len(sections), len(values["section_outputs"])):
                    content = values["section_outputs"][index]
                    sections.append(content)
                    cumulative += count_words(content)
                    logger.info(f"Section {index + 1}/{total} complete", extra=ctx.log_extra)
                    yield ctx.progress(
                        "section_complete",
                        index=index,
                        total=total,
                        title=outline.key_points[index],
                        content=content,
                        cumulative_word_count=cumulative,
                        progress=(index + 1) / total,
                    )

            elif node == "stitch":
                yield ctx.complete(
                    values["output"],
                    job.text,
                    chunks_processed=len(sections),
                    aggressiveness=plan.aggressiveness,
                    sections=len(sections),
                    outline=outline.model_dump(),
                )
