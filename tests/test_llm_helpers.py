"""Tests for provider-output parsing, usage accounting and structured logging."""

import logging

import pytest
from pydantic import ValidationError

from app.core.errors import ProviderMalformedResponse
from app.core.llm import parse_llm_json, parse_provider_json
from app.core.llm_usage import _estimate_cost, log_llm_usage
from app.core.logging import StructuredFormatter
from app.core.schemas_reconstruction import GlobalState, GlobalStateUpdate, Outline


def test_parse_llm_json_strips_fences_and_prose():
    raw = 'Here you go:\n```json\n{"thesis": "T", "key_points": ["a"]}\n```'
    assert parse_llm_json(raw, Outline).thesis == "T"

    raw = 'Sure. {"thesis": "T", "key_points": ["a", "b"]} Hope that helps.'
    assert parse_llm_json(raw, Outline).key_points == ["a", "b"]


def test_parse_llm_json_validation_error():
    with pytest.raises(ValidationError):
        parse_llm_json('{"thesis": "T", "key_points": []}', Outline)


def test_parse_provider_json_wraps_failures():
    with pytest.raises(ProviderMalformedResponse) as exc_info:
        parse_provider_json("no json here", Outline, provider="openai")
    assert exc_info.value.provider == "openai"
    assert exc_info.value.status_code == 502


def test_outline_dedupes_terms():
    outline = Outline(thesis="T", key_points=[" a ", ""], key_terms=["x", "x", " y"])
    assert outline.key_points == ["a"]
    assert outline.key_terms == ["x", "y"]


def test_global_state_merge_keeps_earlier_facts():
    state = GlobalState(thesis="First thesis", key_terms=["alpha"])

    merged = state.apply_update(GlobalStateUpdate(thesis="Other thesis", key_terms=["alpha", "beta"]))

    assert merged.thesis == "First thesis"
    assert merged.key_terms == ["alpha", "beta"]
    assert state.key_terms == ["alpha"]


def test_estimate_cost():
    assert _estimate_cost("gpt-4o", 1_000_000, 0) == 2.5
    assert _estimate_cost("claude-sonnet-4-5-20991231", 0, 1_000_000) == 15.0
    assert _estimate_cost("unknown-model", 1000, 1000) == 0.0


def test_log_llm_usage_never_raises(monkeypatch):
    class BrokenStore:
        def record_llm_call(self, row):
            raise RuntimeError("db down")

    monkeypatch.setattr("app.db.reconstruction_jobs.get_job_store", lambda: BrokenStore())

    log_llm_usage("reconstruction", "gpt-4o", "openai", 10, 10)


def test_structured_formatter_promotes_context_fields():
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "chunk done", None, None)
    record.job_id = "job-1"
    record.chunk_index = 3

    line = StructuredFormatter().format(record)

    assert "level=INFO" in line
    assert "message=chunk done" in line
    assert "job_id=job-1" in line
    assert "chunk_index=3" in line
