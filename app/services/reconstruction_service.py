"""Reconstruction orchestrator.

Binds a request to a strategy, runs the strategy as an event stream and keeps
the session registry and the job store in step with what the strategy
reports. This is the strategy boundary: every exception raised by a running
strategy is turned into a single terminal ``error`` event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from uuid import uuid4

from fastapi import Depends

from app.chains.cross_chunk import stream_cross_chunk
from app.chains.diagnostic_reconstruction import stream_diagnostic_reconstruction
from app.chains.direct_instruction import stream_direct_instruction
from app.chains.position_list import stream_position_list
from app.chains.reconstruction_common import RunContext
from app.chains.universal_expansion import stream_universal_expansion
from app.core.config import Settings, get_settings
from app.core.errors import InvalidInput, JobConflict, ReconstructionError
from app.core.logging import get_logger, log_with_context
from app.core.provider_gateway import TextProvider, get_provider, resolve_provider_name
from app.core.schemas_reconstruction import (
    AbortedEvent,
    CompleteEvent,
    CrossChunkPlan,
    DiagnosticPlan,
    DirectInstructionPlan,
    ErrorEvent,
    GlobalState,
    JobInput,
    JobRecord,
    JobStatus,
    OutlineFirstPlan,
    PositionListPlan,
    ProgressEvent,
    ReconstructionRequest,
    StrategyKind,
    StrategyPlan,
    StreamEvent,
    TerminalEvent,
    UniversalExpansionPlan,
)
from app.core.session_registry import SessionRegistry, get_session_registry
from app.core.strategy_selector import select_strategy
from app.core.text_utils import count_words
from app.db.reconstruction_jobs import JobStore, get_job_store
from app.graphs.outline_reconstruction_graph import stream_outline_first

logger = get_logger(__name__)

ProviderFactory = Callable[[str | None, Settings], TextProvider]


@dataclass
class PreparedRun:
    """A validated request bound to a job id and a strategy plan, ready to run."""

    job_id: str
    plan: StrategyPlan
    job: JobInput
    provider_name: str
    completed_outputs: dict[int, str] = field(default_factory=dict)
    global_state: GlobalState | None = None
    resume: bool = False

    @property
    def strategy(self) -> str:
        return self.plan.kind


class ReconstructionOrchestrator:
    """Runs reconstruction jobs against the session registry and job store."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: JobStore,
        provider_factory: ProviderFactory = get_provider,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.store = store
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()

    # =========================================================================
    # Preparation
    # =========================================================================

    def prepare(self, request: ReconstructionRequest) -> PreparedRun:
        """
        Validate a request, choose its strategy and register the job.

        Raises:
            InvalidInput: Empty request or unknown provider (before any provider call)
        """
        text = request.text.strip()
        instructions = request.custom_instructions
        if not text and not instructions:
            raise InvalidInput("Either text or custom instructions must be provided")

        # Instructions double as the document when no text was sent
        effective_text = text or instructions
        word_count = count_words(effective_text)
        provider_name = resolve_provider_name(request.provider, self.settings)
        plan = select_strategy(
            word_count,
            instructions,
            effective_text,
            fidelity_level=request.fidelity_level,
            settings=self.settings,
        )

        job_id = str(uuid4())
        job = JobInput(
            text=effective_text,
            custom_instructions=instructions,
            fidelity_level=request.fidelity_level,
            target_domain=request.target_domain,
            provider=provider_name,
            input_word_count=word_count,
        )

        self.registry.create(job_id, plan.kind)
        self.store.create_job(
            JobRecord(
                id=job_id,
                strategy=plan.kind,
                input_text=effective_text,
                custom_instructions=instructions,
                fidelity_level=request.fidelity_level,
                target_domain=request.target_domain,
                provider=provider_name,
                input_word_count=word_count,
                max_words_per_chunk=plan.max_words_per_chunk if isinstance(plan, CrossChunkPlan) else None,
            )
        )
        log_with_context(
            logger,
            logging.INFO,
            f"Prepared {plan.kind} job for {word_count} words",
            job_id=job_id,
            strategy=plan.kind,
            provider=provider_name,
        )
        return PreparedRun(job_id=job_id, plan=plan, job=job, provider_name=provider_name)

    def prepare_resume(self, job_id: str) -> PreparedRun:
        """
        Rebuild a cross-chunk run from persisted chunks and global state.

        Raises:
            JobNotFound: Unknown job
            JobConflict: Job is not cross-chunk, already completed, or still running
        """
        record = self.store.require_job(job_id)
        if record.strategy != StrategyKind.CROSS_CHUNK.value:
            raise JobConflict(f"Only cross-chunk jobs can be resumed (job {job_id} is {record.strategy})")
        if record.status == JobStatus.COMPLETED:
            raise JobConflict(f"Job {job_id} is already completed")

        completed = {chunk.chunk_index: chunk.output_text for chunk in self.store.list_chunks(job_id)}
        global_state = self.store.read_global_state(job_id)
        plan = CrossChunkPlan(
            aggressiveness="conservative" if record.fidelity_level == "conservative" else "aggressive",
            max_words_per_chunk=record.max_words_per_chunk or self.settings.CROSS_CHUNK_MAX_WORDS,
        )
        job = JobInput(
            text=record.input_text,
            custom_instructions=record.custom_instructions,
            fidelity_level=record.fidelity_level,
            target_domain=record.target_domain,
            provider=record.provider,
            input_word_count=record.input_word_count,
        )
        # Claims the id; a second resume of a live job fails here
        self.registry.create(job_id, plan.kind)
        self.registry.seed_outputs(job_id, completed)
        logger.info(
            f"Resuming job {job_id} with {len(completed)} completed chunks",
            extra={"job_id": job_id, "strategy": plan.kind},
        )
        return PreparedRun(
            job_id=job_id,
            plan=plan,
            job=job,
            provider_name=record.provider or self.settings.DEFAULT_PROVIDER,
            completed_outputs=completed,
            global_state=global_state,
            resume=True,
        )

    # =========================================================================
    # Execution
    # =========================================================================

    def _strategy_events(self, ctx: RunContext, prepared: PreparedRun) -> AsyncIterator[StreamEvent]:
        plan, job = prepared.plan, prepared.job
        if isinstance(plan, UniversalExpansionPlan):
            return stream_universal_expansion(ctx, plan, job)
        if isinstance(plan, PositionListPlan):
            return stream_position_list(ctx, plan, job)
        if isinstance(plan, OutlineFirstPlan):
            return stream_outline_first(ctx, plan, job)
        if isinstance(plan, CrossChunkPlan):
            return stream_cross_chunk(
                ctx,
                plan,
                job,
                completed_outputs=prepared.completed_outputs,
                global_state=prepared.global_state,
            )
        if isinstance(plan, DirectInstructionPlan):
            return stream_direct_instruction(ctx, plan, job)
        if isinstance(plan, DiagnosticPlan):
            return stream_diagnostic_reconstruction(ctx, plan, job)
        raise InvalidInput(f"Unsupported strategy {plan.kind}")

    async def events(self, prepared: PreparedRun) -> AsyncIterator[StreamEvent]:
        """
        Run a prepared job as an event stream.

        Yields a ``started`` progress event first and exactly one terminal
        event (complete, aborted or error) last.
        """
        job_id = prepared.job_id
        started = time.monotonic()

        session = self.registry.get(job_id)
        if session is not None and session.status == JobStatus.ABORTED:
            # Aborted before it started
            partial = session.partial_output()
            yield AbortedEvent(
                session_id=job_id,
                strategy=prepared.strategy,
                partial_output=partial,
                chunks_processed=session.chunks_processed,
                word_count=count_words(partial),
            )
            return

        try:
            self.registry.start(job_id, prepared.strategy)
        except JobConflict as e:
            # Another run owns this session; leave its state alone
            logger.warning(f"Not starting job: {e.message}", extra={"job_id": job_id})
            yield self._error_event(prepared, e)
            return

        try:
            self.store.update_job(job_id, status=JobStatus.PROCESSING, error=None)
        except Exception as e:
            yield self._record_failure(prepared, e)
            return

        yield ProgressEvent(
            session_id=job_id,
            strategy=prepared.strategy,
            stage="resumed" if prepared.resume else "started",
            message=f"Running {prepared.strategy}",
            index=max(prepared.completed_outputs) + 1 if prepared.completed_outputs else None,
        )

        terminal: TerminalEvent | None = None
        try:
            provider = self.provider_factory(prepared.provider_name, self.settings)
            ctx = RunContext(
                job_id=job_id,
                strategy=prepared.strategy,
                provider=provider,
                registry=self.registry,
                store=self.store,
                settings=self.settings,
            )
            async for event in self._strategy_events(ctx, prepared):
                if isinstance(event, ProgressEvent):
                    self._record_progress(job_id, event)
                elif isinstance(event, CompleteEvent):
                    self._record_complete(job_id, event, started)
                    terminal = event
                elif isinstance(event, AbortedEvent):
                    self._record_aborted(job_id, event)
                    terminal = event
                yield event
                if terminal is not None:
                    return

            if terminal is None:
                raise ReconstructionError(f"{prepared.strategy} ended without a result")

        except (GeneratorExit, asyncio.CancelledError):
            self._record_disconnect(job_id)
            raise
        except Exception as e:
            if self.registry.is_abort_requested(job_id):
                yield self._record_abort_after_failure(prepared, e)
            else:
                yield self._record_failure(prepared, e)

    async def run(self, prepared: PreparedRun) -> TerminalEvent:
        """Drain ``events`` and return the terminal event."""
        terminal: TerminalEvent | None = None
        async for event in self.events(prepared):
            if not isinstance(event, ProgressEvent):
                terminal = event
        return terminal

    # =========================================================================
    # Abort
    # =========================================================================

    def abort(self, session_id: str) -> dict:
        """
        Request cancellation and report the partial output so far.

        Falls back to the persisted job when the session is not live.

        Raises:
            JobNotFound: Unknown session and job
        """
        session = self.registry.get(session_id)
        if session is not None:
            was_created = session.status == JobStatus.CREATED
            session = self.registry.abort(session_id)
            partial = self.registry.get_partial_output(session_id)
            if was_created:
                # Never started: nothing else will persist the transition
                self._safe_update(session_id, status=JobStatus.ABORTED, partial_output=partial)
        else:
            record = self.store.require_job(session_id)
            partial = record.output if record.status == JobStatus.COMPLETED and record.output else record.partial_output

        return {
            "success": True,
            "session_id": session_id,
            "partial_output": partial,
            "word_count": count_words(partial),
        }

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _record_progress(self, job_id: str, event: ProgressEvent) -> None:
        if event.total is not None:
            self.registry.set_total(job_id, event.total)
        if event.content is None or event.index is None:
            return
        self.registry.record_chunk_complete(job_id, event.index, event.content)
        session = self.registry.get(job_id)
        self.store.update_job(
            job_id,
            chunks_processed=session.chunks_processed,
            total_chunks=session.total_chunks,
            partial_output=session.partial_output(),
        )

    def _record_complete(self, job_id: str, event: CompleteEvent, started: float) -> None:
        self.registry.complete(job_id, event.output)
        self.store.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            output=event.output,
            partial_output=event.output,
            chunks_processed=event.chunks_processed,
            details=event.details,
        )
        log_with_context(
            logger,
            logging.INFO,
            f"Job completed: {event.output_word_count} words in {int((time.monotonic() - started) * 1000)}ms",
            job_id=job_id,
            strategy=event.strategy,
        )

    def _record_aborted(self, job_id: str, event: AbortedEvent) -> None:
        self.registry.mark_aborted(job_id)
        self.store.update_job(
            job_id,
            status=JobStatus.ABORTED,
            partial_output=event.partial_output,
            chunks_processed=event.chunks_processed,
        )

    def _record_disconnect(self, job_id: str) -> None:
        session = self.registry.get(job_id)
        if session is None or session.is_terminal:
            return
        logger.warning("Stream consumer went away; marking job aborted", extra={"job_id": job_id})
        self.registry.mark_aborted(job_id)
        self._safe_update(job_id, status=JobStatus.ABORTED, partial_output=session.partial_output())

    def _error_event(self, prepared: PreparedRun, error: Exception) -> ErrorEvent:
        if isinstance(error, ReconstructionError):
            message, status_code = error.message, error.status_code
        else:
            message, status_code = f"Reconstruction failed: {error}", 500
        return ErrorEvent(
            session_id=prepared.job_id,
            strategy=prepared.strategy,
            message=message,
            error_type=type(error).__name__,
            status_code=status_code,
        )

    def _record_failure(self, prepared: PreparedRun, error: Exception) -> ErrorEvent:
        job_id = prepared.job_id
        event = self._error_event(prepared, error)
        if isinstance(error, ReconstructionError):
            logger.error(f"Job failed: {event.message}", extra={"job_id": job_id, "strategy": prepared.strategy})
        else:
            logger.exception(f"Job failed unexpectedly: {error}", extra={"job_id": job_id})

        session = self.registry.get(job_id)
        if session is not None and not session.is_terminal:
            self.registry.fail(job_id, event.message)
        self._safe_update(job_id, status=JobStatus.FAILED, error=event.message)
        return event

    def _record_abort_after_failure(self, prepared: PreparedRun, error: Exception) -> AbortedEvent:
        """A unit failed after abort was requested: finish as aborted with what completed."""
        job_id = prepared.job_id
        logger.info(f"Unit failed after abort was requested: {error}", extra={"job_id": job_id})
        session = self.registry.get(job_id)
        partial = session.partial_output() if session is not None else ""
        event = AbortedEvent(
            session_id=job_id,
            strategy=prepared.strategy,
            partial_output=partial,
            chunks_processed=session.chunks_processed if session is not None else 0,
            word_count=count_words(partial),
        )
        self.registry.mark_aborted(job_id)
        self._safe_update(
            job_id,
            status=JobStatus.ABORTED,
            partial_output=partial,
            chunks_processed=event.chunks_processed,
        )
        return event

    def _safe_update(self, job_id: str, **fields) -> None:
        """Store update on an error path; a storage failure is logged, not raised."""
        try:
            self.store.update_job(job_id, **fields)
        except Exception as e:
            logger.error(f"Failed to persist job update: {e}", extra={"job_id": job_id})


def get_provider_factory() -> ProviderFactory:
    """FastAPI dependency returning the provider factory (overridden in tests)."""
    return get_provider


def get_orchestrator(
    registry: SessionRegistry = Depends(get_session_registry),
    store: JobStore = Depends(get_job_store),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    settings: Settings = Depends(get_settings),
) -> ReconstructionOrchestrator:
    """FastAPI dependency building the orchestrator for a request."""
    return ReconstructionOrchestrator(
        registry=registry,
        store=store,
        provider_factory=provider_factory,
        settings=settings,
    )
