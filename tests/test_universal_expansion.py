"""Tests for universal expansion."""

import pytest

from app.chains.universal_expansion import (
    estimate_sections,
    split_title,
    stream_universal_expansion,
    universal_expand,
)
from app.core.errors import ProviderUnavailable
from app.core.schemas_reconstruction import (
    AbortedEvent,
    CompleteEvent,
    JobInput,
    ProgressEvent,
    UniversalExpansionPlan,
)
from tests.fakes.fake_provider import FakeProvider

SOURCE = "Short essay that needs to grow into something much longer."


def _words(n: int) -> str:
    return " ".join(["word"] * n)


async def _collect(events):
    return [event async for event in events]


def test_estimate_sections():
    assert estimate_sections(1000, 800) == 2
    assert estimate_sections(5000, 800) == 7
    assert estimate_sections(10, 800) == 1


def test_split_title():
    assert split_title("Why It Matters\nBody text here.") == ("Why It Matters", "Body text here.")
    assert split_title("## Background:\nBody.") == ("Background", "Body.")
    assert split_title("This is a full sentence.\nMore.") == (None, "This is a full sentence.\nMore.")
    assert split_title("Only one line") == (None, "Only one line")


@pytest.mark.asyncio
async def test_expansion_reaches_target(make_ctx):
    provider = FakeProvider(handler=lambda prompt: _words(250))
    ctx = make_ctx(provider, strategy="universal-expansion")
    plan = UniversalExpansionPlan(target_word_count=1000)

    events = await _collect(stream_universal_expansion(ctx, plan, JobInput(text=SOURCE)))

    assert events[0].stage == "planned"
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.details["sections_generated"] == 4
    assert complete.details["output_word_count"] >= 1000
    assert complete.details["section_titles"] == ["Section 1", "Section 2", "Section 3", "Section 4"]
    assert "shortfall" not in complete.details
    assert complete.output == complete.details["expanded_text"]
    assert provider.calls == 4


@pytest.mark.asyncio
async def test_titles_are_split_from_output(make_ctx):
    provider = FakeProvider(handler=lambda prompt: f"The First Objection\n{_words(600)}")
    ctx = make_ctx(provider, strategy="universal-expansion")

    events = await _collect(
        stream_universal_expansion(ctx, UniversalExpansionPlan(target_word_count=1000), JobInput(text=SOURCE))
    )

    sections = [e for e in events if isinstance(e, ProgressEvent) and e.stage == "section_complete"]
    assert [s.title for s in sections] == ["The First Objection", "The First Objection"]
    assert "The First Objection" not in events[-1].output
    assert events[-1].details["output_word_count"] == 1200


@pytest.mark.asyncio
async def test_stalled_sections_end_in_reported_shortfall(make_ctx):
    provider = FakeProvider(handler=lambda prompt: "Too short.")
    ctx = make_ctx(provider, strategy="universal-expansion")
    plan = UniversalExpansionPlan(target_word_count=1000)

    events = await _collect(stream_universal_expansion(ctx, plan, JobInput(text=SOURCE)))

    assert provider.calls == 4
    assert any(isinstance(e, ProgressEvent) and e.stage == "shortfall" for e in events)
    details = events[-1].details
    assert details["shortfall"] is True
    assert details["shortfall_words"] == 1000
    assert details["sections_generated"] == 0
    assert details["stalled_attempts"] == 4


@pytest.mark.asyncio
async def test_partial_shortfall(make_ctx):
    provider = FakeProvider(handler=lambda prompt: _words(100))
    ctx = make_ctx(provider, strategy="universal-expansion")

    events = await _collect(
        stream_universal_expansion(ctx, UniversalExpansionPlan(target_word_count=1000), JobInput(text=SOURCE))
    )

    details = events[-1].details
    assert details["sections_generated"] == 4
    assert details["shortfall_words"] == 600


@pytest.mark.asyncio
async def test_section_prompts_track_progress(make_ctx):
    provider = FakeProvider(handler=lambda prompt: _words(250))
    ctx = make_ctx(provider, strategy="universal-expansion")
    job = JobInput(text=SOURCE, custom_instructions="expand to 1000 words")

    await _collect(stream_universal_expansion(ctx, UniversalExpansionPlan(target_word_count=1000), job))

    assert "So far 0 words have been written." in provider.prompts[0]
    assert "So far 500 words have been written." in provider.prompts[2]
    assert "- Section 2" in provider.prompts[2]
    assert "expand to 1000 words" in provider.prompts[0]


@pytest.mark.asyncio
async def test_universal_expand_reports_each_section(make_ctx):
    provider = FakeProvider(handler=lambda prompt: _words(250))
    ctx = make_ctx(provider, strategy="universal-expansion")
    chunks = []

    result = await universal_expand(
        ctx, UniversalExpansionPlan(target_word_count=1000), JobInput(text=SOURCE), on_chunk=chunks.append
    )

    assert result["sections_generated"] == 4
    assert result["input_word_count"] == 10
    assert result["processing_time_ms"] >= 0
    assert [c["section_index"] for c in chunks] == [0, 1, 2, 3]
    assert [c["cumulative_word_count"] for c in chunks] == [250, 500, 750, 1000]
    assert chunks[-1]["progress"] == 1.0


@pytest.mark.asyncio
async def test_abort_returns_sections_so_far(make_ctx, registry):
    provider = FakeProvider(handler=lambda prompt: _words(250))
    ctx = make_ctx(provider, strategy="universal-expansion")

    events = []
    async for event in stream_universal_expansion(ctx, UniversalExpansionPlan(target_word_count=1000), JobInput(text=SOURCE)):
        events.append(event)
        if isinstance(event, ProgressEvent) and event.stage == "section_complete" and event.index == 1:
            registry.abort(ctx.job_id)

    aborted = events[-1]
    assert isinstance(aborted, AbortedEvent)
    assert aborted.chunks_processed == 2
    assert aborted.word_count == 500


@pytest.mark.asyncio
async def test_section_failure_fails_the_run(make_ctx):
    provider = FakeProvider(handler=lambda prompt: ProviderUnavailable("down"))
    ctx = make_ctx(provider, strategy="universal-expansion")

    with pytest.raises(ProviderUnavailable):
        await _collect(
            stream_universal_expansion(ctx, UniversalExpansionPlan(target_word_count=1000), JobInput(text=SOURCE))
        )
    assert provider.calls == 3
