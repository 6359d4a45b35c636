"""API endpoints for document reconstruction, abort/resume and job inspection."""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse

from app.core.config import Settings, get_settings
from app.core.errors import JobNotFound, ReconstructionError
from app.core.logging import get_logger
from app.core.provider_gateway import provider_status
from app.core.schemas_reconstruction import (
    AbortedEvent,
    CompleteEvent,
    ErrorEvent,
    ReconstructionRequest,
    StreamEvent,
    TerminalEvent,
)
from app.core.text_utils import count_words
from app.db.reconstruction_jobs import JobStore, get_job_store
from app.services.reconstruction_service import PreparedRun, ReconstructionOrchestrator, get_orchestrator

logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def _error_response(error: ReconstructionError) -> JSONResponse:
    return JSONResponse(content={"success": False, "message": error.message}, status_code=error.status_code)


def format_sse(event: StreamEvent) -> str:
    """
    SSE format:
    event: {type}
    data: {json event}

    """
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


async def _sse_generator(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)


def _stream_response(orchestrator: ReconstructionOrchestrator, prepared: PreparedRun) -> StreamingResponse:
    logger.info(
        f"Streaming {prepared.strategy} job {prepared.job_id}",
        extra={"job_id": prepared.job_id, "strategy": prepared.strategy},
    )
    return StreamingResponse(
        _sse_generator(orchestrator.events(prepared)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def terminal_payload(event: TerminalEvent) -> tuple[dict, int]:
    """Render a terminal event as a JSON body and status code."""
    if isinstance(event, CompleteEvent):
        return (
            {
                **event.details,
                "success": True,
                "session_id": event.session_id,
                "mode": event.strategy,
                "output": event.output,
                "input_word_count": event.input_word_count,
                "output_word_count": event.output_word_count,
                "chunks_processed": event.chunks_processed,
            },
            200,
        )
    if isinstance(event, AbortedEvent):
        return (
            {
                "success": True,
                "aborted": True,
                "session_id": event.session_id,
                "mode": event.strategy,
                "output": event.partial_output,
                "partial_output": event.partial_output,
                "chunks_processed": event.chunks_processed,
                "word_count": event.word_count,
            },
            200,
        )
    error: ErrorEvent = event
    return (
        {
            "success": False,
            "session_id": error.session_id,
            "mode": error.strategy,
            "message": error.message,
            "error_type": error.error_type,
        },
        error.status_code,
    )


async def _json_response(orchestrator: ReconstructionOrchestrator, prepared: PreparedRun) -> JSONResponse:
    terminal = await orchestrator.run(prepared)
    content, status_code = terminal_payload(terminal)
    return JSONResponse(content=content, status_code=status_code)


@router.post("/reconstruction")
async def reconstruct(
    request: ReconstructionRequest,
    stream: bool = Query(False, description="Stream progress as server-sent events"),
    orchestrator: ReconstructionOrchestrator = Depends(get_orchestrator),
):
    """
    Reconstruct a document with the strategy its size, shape and instructions call for.

    Args:
        request: ReconstructionRequest (text, custom_instructions, fidelity_level, ...)
        stream: Stream events instead of returning one JSON body (also settable in the body)

    Returns:
        JSON result, or an SSE stream of progress/complete/aborted/error events
    """
    try:
        prepared = orchestrator.prepare(request)
    except ReconstructionError as e:
        logger.warning(f"Rejected reconstruction request: {e.message}")
        return _error_response(e)

    if stream or request.stream:
        return _stream_response(orchestrator, prepared)
    return await _json_response(orchestrator, prepared)


@router.post("/reconstruction/stream")
async def reconstruct_stream(
    request: ReconstructionRequest,
    orchestrator: ReconstructionOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """
    Streaming-only reconstruction for large documents.

    Returns:
        SSE stream; 400 JSON when the input is under STREAM_MIN_WORDS
    """
    word_count = count_words(request.text or request.custom_instructions or "")
    if word_count < settings.STREAM_MIN_WORDS:
        return JSONResponse(
            content={
                "success": False,
                "message": (
                    f"Streaming is for documents of at least {settings.STREAM_MIN_WORDS} words "
                    f"(got {word_count}); use POST /v1/reconstruction instead"
                ),
            },
            status_code=400,
        )

    try:
        prepared = orchestrator.prepare(request)
    except ReconstructionError as e:
        return _error_response(e)
    return _stream_response(orchestrator, prepared)


@router.post("/reconstruction/abort/{session_id}")
async def abort_reconstruction(
    session_id: str,
    orchestrator: ReconstructionOrchestrator = Depends(get_orchestrator),
):
    """
    Abort a running reconstruction and return what it has produced so far.

    Returns:
        {success, session_id, partial_output, word_count}
    """
    try:
        return orchestrator.abort(session_id)
    except JobNotFound as e:
        return _error_response(e)


@router.get("/jobs")
async def list_reconstruction_jobs(
    limit: int = Query(20, description="Maximum number of jobs to return", ge=1, le=100),
    offset: int = Query(0, description="Number of jobs to skip", ge=0),
    store: JobStore = Depends(get_job_store),
) -> dict:
    """
    List recent reconstruction jobs, newest first.

    Returns:
        Dict with jobs array and pagination info
    """
    jobs = store.list_jobs(limit=limit, offset=offset)
    return {
        "jobs": [job.model_dump(mode="json", exclude={"input_text", "partial_output", "output"}) for job in jobs],
        "limit": limit,
        "offset": offset,
        "count": len(jobs),
    }


@router.get("/jobs/{job_id}")
async def get_reconstruction_job(job_id: str, store: JobStore = Depends(get_job_store)):
    """
    Get a job and its per-chunk results in index order.

    Raises:
        404 JSON: If job not found
    """
    try:
        job = store.require_job(job_id)
    except JobNotFound as e:
        return _error_response(e)

    return {
        "job": job.model_dump(mode="json"),
        "chunks": [chunk.model_dump(mode="json") for chunk in store.list_chunks(job_id)],
    }


@router.post("/jobs/{job_id}/resume")
async def resume_reconstruction_job(
    job_id: str,
    stream: bool = Query(False, description="Stream progress as server-sent events"),
    orchestrator: ReconstructionOrchestrator = Depends(get_orchestrator),
):
    """
    Resume an aborted or interrupted cross-chunk job from its first unfinished chunk.

    Returns:
        JSON result or SSE stream, as for POST /v1/reconstruction
    """
    try:
        prepared = orchestrator.prepare_resume(job_id)
    except ReconstructionError as e:
        return _error_response(e)

    if stream:
        return _stream_response(orchestrator, prepared)
    return await _json_response(orchestrator, prepared)


@router.get("/check-api")
async def check_api(settings: Settings = Depends(get_settings)) -> dict:
    """Report which providers have credentials configured."""
    return {
        "status": "ok",
        "default_provider": settings.DEFAULT_PROVIDER,
        "providers": provider_status(settings),
    }
