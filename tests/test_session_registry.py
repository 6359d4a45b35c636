"""Tests for the in-process session registry."""

import pytest

from app.core.errors import JobConflict, JobNotFound
from app.core.schemas_reconstruction import JobStatus


def test_start_moves_session_to_processing(registry):
    session = registry.start("job-1", "cross-chunk")
    assert session.status == JobStatus.PROCESSING
    assert registry.get("job-1") is session


def test_start_reuses_created_session(registry):
    created = registry.create("job-1", "outline-first")
    started = registry.start("job-1", "outline-first")
    assert started is created
    assert started.status == JobStatus.PROCESSING


def test_partial_output_is_in_index_order(registry):
    registry.start("job-1", "cross-chunk")
    registry.record_chunk_complete("job-1", 2, "third")
    registry.record_chunk_complete("job-1", 0, "first")
    registry.record_chunk_complete("job-1", 1, "second")

    assert registry.get_partial_output("job-1") == "first\n\nsecond\n\nthird"
    assert registry.get("job-1").chunks_processed == 3


def test_recording_an_index_twice_replaces_it(registry):
    registry.start("job-1", "cross-chunk")
    registry.record_chunk_complete("job-1", 0, "draft")
    registry.record_chunk_complete("job-1", 0, "final")
    assert registry.get_partial_output("job-1") == "final"


def test_abort_running_session_sets_flag(registry):
    registry.start("job-1", "cross-chunk")

    registry.abort("job-1")
    registry.abort("job-1")

    session = registry.get("job-1")
    assert session.abort_requested is True
    assert session.status == JobStatus.PROCESSING
    assert registry.is_abort_requested("job-1")


def test_abort_created_session_aborts_immediately(registry):
    registry.create("job-1", "diagnostic-reconstruction")
    assert registry.abort("job-1").status == JobStatus.ABORTED


def test_abort_completed_session_is_a_no_op(registry):
    registry.start("job-1", "direct-instruction")
    registry.complete("job-1", "done")

    session = registry.abort("job-1")

    assert session.status == JobStatus.COMPLETED
    assert session.abort_requested is False
    assert registry.get_partial_output("job-1") == "done"


def test_abort_unknown_session(registry):
    with pytest.raises(JobNotFound):
        registry.abort("missing")
    assert registry.is_abort_requested("missing") is False


def test_start_over_running_session_conflicts(registry):
    registry.start("job-1", "cross-chunk")
    with pytest.raises(JobConflict):
        registry.start("job-1", "cross-chunk")
    with pytest.raises(JobConflict):
        registry.create("job-1", "cross-chunk")


def test_start_replaces_terminal_session(registry):
    registry.start("job-1", "cross-chunk")
    registry.abort("job-1")
    registry.mark_aborted("job-1")

    session = registry.start("job-1", "cross-chunk")

    assert session.status == JobStatus.PROCESSING
    assert session.abort_requested is False


def test_terminal_session_ignores_mutation(registry):
    registry.start("job-1", "cross-chunk")
    registry.record_chunk_complete("job-1", 0, "one")
    registry.complete("job-1", "final output")

    registry.record_chunk_complete("job-1", 1, "late")
    registry.fail("job-1", "too late")

    session = registry.get("job-1")
    assert session.status == JobStatus.COMPLETED
    assert session.unit_outputs == {0: "one"}
    assert session.error is None


def test_fail_records_error(registry):
    registry.start("job-1", "cross-chunk")
    registry.fail("job-1", "provider down")
    session = registry.get("job-1")
    assert session.status == JobStatus.FAILED
    assert session.error == "provider down"


def test_partial_output_unknown_and_empty(registry):
    with pytest.raises(JobNotFound):
        registry.get_partial_output("missing")
    registry.start("job-1", "cross-chunk")
    assert registry.get_partial_output("job-1") == ""


def test_seed_outputs(registry):
    registry.start("job-1", "cross-chunk")
    registry.seed_outputs("job-1", {0: "a", 1: "b"})
    registry.record_chunk_complete("job-1", 2, "c")
    assert registry.get_partial_output("job-1") == "a\n\nb\n\nc"


def test_remove_finished_session(registry):
    registry.start("job-1", "cross-chunk")
    with pytest.raises(JobConflict):
        registry.remove("job-1")

    registry.complete("job-1", "done")

    assert registry.remove("job-1") is True
    assert registry.get("job-1") is None
    assert registry.remove("job-1") is False


def test_prune_drops_only_expired_terminal_sessions():
    from app.core.session_registry import SessionRegistry

    keep = SessionRegistry(ttl_seconds=3600)
    keep.start("done", "cross-chunk")
    keep.complete("done", "output")
    assert keep.prune() == 0
    assert len(keep) == 1

    expire = SessionRegistry(ttl_seconds=0)
    expire.start("done", "cross-chunk")
    expire.complete("done", "output")
    expire.start("running", "cross-chunk")
    expire.create("waiting", "outline-first")

    assert expire.prune() == 1
    assert expire.get("done") is None
    assert expire.get("running").status == JobStatus.PROCESSING
    assert expire.get("waiting").status == JobStatus.CREATED


def test_create_prunes_expired_sessions():
    from app.core.session_registry import SessionRegistry

    registry = SessionRegistry(ttl_seconds=0)
    registry.start("old", "cross-chunk")
    registry.fail("old", "boom")

    registry.create("new", "cross-chunk")

    assert registry.get("old") is None
    assert len(registry) == 1
