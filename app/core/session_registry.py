"""In-process registry of live reconstruction sessions.

One ``SessionRegistry`` is created at start-up and injected into request
handlers. Each session moves created -> processing -> completed | aborted |
failed; terminal sessions accept no further mutation. Terminal sessions are
dropped once they are older than the registry's TTL; lookups after that go
to the job store.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from fastapi import Request

from app.core.errors import JobConflict, JobNotFound
from app.core.logging import get_logger
from app.core.schemas_reconstruction import TERMINAL_STATUSES, JobStatus, utc_now

logger = get_logger(__name__)

UNIT_JOINER = "\n\n"


@dataclass
class JobSession:
    job_id: str
    strategy: str
    status: JobStatus = JobStatus.CREATED
    abort_requested: bool = False
    total_chunks: int = 0
    unit_outputs: dict[int, str] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def chunks_processed(self) -> int:
        return len(self.unit_outputs)

    def partial_output(self) -> str:
        if self.status == JobStatus.COMPLETED and self.output is not None:
            return self.output
        return UNIT_JOINER.join(self.unit_outputs[i] for i in sorted(self.unit_outputs))


class SessionRegistry:
    """Thread-safe map of job id -> JobSession.

    Args:
        ttl_seconds: How long a terminal session stays after its last update
    """

    def __init__(self, ttl_seconds: float = 900.0):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: dict[str, JobSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _prune_locked(self) -> int:
        cutoff = utc_now() - self.ttl
        expired = [
            job_id
            for job_id, session in self._sessions.items()
            if session.is_terminal and session.updated_at <= cutoff
        ]
        for job_id in expired:
            del self._sessions[job_id]
        if expired:
            logger.debug(f"Pruned {len(expired)} finished sessions")
        return len(expired)

    def prune(self) -> int:
        """Drop terminal sessions past the TTL. Returns how many were dropped."""
        with self._lock:
            return self._prune_locked()

    def remove(self, job_id: str) -> bool:
        """
        Forget a finished session.

        Raises:
            JobConflict: If the session is still live
        """
        with self._lock:
            session = self._sessions.get(job_id)
            if session is None:
                return False
            if not session.is_terminal:
                raise JobConflict(f"Session {job_id} is still {session.status.value}")
            del self._sessions[job_id]
            return True

    def _require(self, job_id: str) -> JobSession:
        session = self._sessions.get(job_id)
        if session is None:
            raise JobNotFound(f"Session {job_id} not found")
        return session

    def _mutable(self, job_id: str, action: str) -> JobSession | None:
        session = self._require(job_id)
        if session.is_terminal:
            logger.warning(
                f"Ignoring {action} on session {job_id}: already {session.status.value}",
                extra={"job_id": job_id},
            )
            return None
        return session

    def create(self, job_id: str, strategy: str, total_chunks: int = 0) -> JobSession:
        """
        Register a session in the created state.

        Raises:
            JobConflict: If a live session with this id is still running
        """
        with self._lock:
            self._prune_locked()
            existing = self._sessions.get(job_id)
            if existing is not None and not existing.is_terminal:
                raise JobConflict(f"Session {job_id} is already {existing.status.value}")
            session = JobSession(job_id=job_id, strategy=strategy, total_chunks=total_chunks)
            self._sessions[job_id] = session
            return session

    def start(self, job_id: str, strategy: str, total_chunks: int = 0) -> JobSession:
        """Create (or replace a terminal) session and move it to processing."""
        with self._lock:
            self._prune_locked()
            existing = self._sessions.get(job_id)
            if existing is not None and existing.status == JobStatus.CREATED:
                session = existing
                session.strategy = strategy
                session.total_chunks = total_chunks or session.total_chunks
            elif existing is not None and not existing.is_terminal:
                raise JobConflict(f"Session {job_id} is already {existing.status.value}")
            else:
                session = JobSession(job_id=job_id, strategy=strategy, total_chunks=total_chunks)
                self._sessions[job_id] = session
            session.status = JobStatus.PROCESSING
            session.updated_at = utc_now()
            logger.info(f"Session {job_id} started ({strategy})", extra={"job_id": job_id, "strategy": strategy})
            return session

    def get(self, job_id: str) -> JobSession | None:
        return self._sessions.get(job_id)

    def set_total(self, job_id: str, total_chunks: int) -> None:
        with self._lock:
            session = self._mutable(job_id, "set_total")
            if session is not None:
                session.total_chunks = total_chunks
                session.updated_at = utc_now()

    def record_chunk_complete(self, job_id: str, chunk_index: int, text: str) -> None:
        """Store one unit's output. Re-recording an index replaces it."""
        with self._lock:
            session = self._mutable(job_id, "record_chunk_complete")
            if session is not None:
                session.unit_outputs[chunk_index] = text
                session.updated_at = utc_now()

    def seed_outputs(self, job_id: str, outputs: dict[int, str]) -> None:
        """Preload outputs recovered from storage before a resumed run."""
        with self._lock:
            session = self._mutable(job_id, "seed_outputs")
            if session is not None:
                session.unit_outputs.update(outputs)
                session.updated_at = utc_now()

    def abort(self, job_id: str) -> JobSession:
        """
        Request cancellation. Idempotent.

        A running session gets its abort flag set and stops at the next unit
        boundary. A session that never started is aborted immediately.
        Terminal sessions are left untouched.

        Raises:
            JobNotFound: If the id is unknown
        """
        with self._lock:
            session = self._require(job_id)
            if session.is_terminal:
                return session
            session.abort_requested = True
            if session.status == JobStatus.CREATED:
                session.status = JobStatus.ABORTED
            session.updated_at = utc_now()
            logger.info(f"Abort requested for session {job_id}", extra={"job_id": job_id})
            return session

    def is_abort_requested(self, job_id: str) -> bool:
        session = self._sessions.get(job_id)
        return bool(session and session.abort_requested)

    def mark_aborted(self, job_id: str) -> None:
        with self._lock:
            session = self._mutable(job_id, "mark_aborted")
            if session is not None:
                session.status = JobStatus.ABORTED
                session.updated_at = utc_now()

    def complete(self, job_id: str, output: str) -> None:
        with self._lock:
            session = self._mutable(job_id, "complete")
            if session is not None:
                session.status = JobStatus.COMPLETED
                session.output = output
                session.updated_at = utc_now()

    def fail(self, job_id: str, error: str) -> None:
        with self._lock:
            session = self._mutable(job_id, "fail")
            if session is not None:
                session.status = JobStatus.FAILED
                session.error = error
                session.updated_at = utc_now()

    def get_partial_output(self, job_id: str) -> str:
        """Accumulated output so far (final output once completed).

        Raises:
            JobNotFound: If the id is unknown
        """
        with self._lock:
            return self._require(job_id).partial_output()


def get_session_registry(request: Request) -> SessionRegistry:
    """FastAPI dependency returning the application's registry."""
    return request.app.state.session_registry
