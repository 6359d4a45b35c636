"""Reconstruction job persistence: jobs, per-chunk results, global state and usage rows."""

import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from app.core.config import get_settings
from app.core.errors import JobNotFound
from app.core.logging import get_logger
from app.core.schemas_reconstruction import ChunkRecord, GlobalState, JobRecord, utc_now

logger = get_logger(__name__)

JOBS_TABLE = "reconstruction_jobs"
CHUNKS_TABLE = "reconstruction_chunks"
USAGE_TABLE = "llm_usage_log"


def _utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


class JobStore(ABC):
    """Storage boundary used by the orchestrator and the cross-chunk strategy."""

    @abstractmethod
    def create_job(self, record: JobRecord) -> JobRecord: ...

    @abstractmethod
    def get_job(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        """Apply field updates; raises JobNotFound for unknown ids."""

    @abstractmethod
    def list_jobs(self, limit: int = 50, offset: int = 0) -> list[JobRecord]:
        """Jobs ordered newest first."""

    @abstractmethod
    def append_chunk(self, record: ChunkRecord) -> None:
        """Upsert by (job_id, chunk_index); writing the same chunk twice keeps the last write."""

    @abstractmethod
    def list_chunks(self, job_id: str) -> list[ChunkRecord]:
        """Chunks for a job ordered by index."""

    @abstractmethod
    def read_global_state(self, job_id: str) -> GlobalState | None: ...

    @abstractmethod
    def write_global_state(self, job_id: str, state: GlobalState) -> None: ...

    @abstractmethod
    def record_llm_call(self, row: dict[str, Any]) -> None: ...

    def require_job(self, job_id: str) -> JobRecord:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryJobStore(JobStore):
    """Process-local store. Records are copied in and out so callers cannot mutate storage.

    Args:
        max_usage_rows: Usage rows kept; older rows are dropped first
    """

    def __init__(self, max_usage_rows: int = 10000):
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._chunks: dict[str, dict[int, ChunkRecord]] = {}
        self._states: dict[str, GlobalState] = {}
        self.llm_calls: deque[dict[str, Any]] = deque(maxlen=max_usage_rows)

    def create_job(self, record: JobRecord) -> JobRecord:
        with self._lock:
            self._jobs[record.id] = record.model_copy(deep=True)
        logger.info(f"Created job {record.id}", extra={"job_id": record.id, "strategy": record.strategy})
        return record

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            updated = job.model_copy(update={**fields, "updated_at": utc_now()}, deep=True)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def list_jobs(self, limit: int = 50, offset: int = 0) -> list[JobRecord]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs[offset : offset + limit]]

    def append_chunk(self, record: ChunkRecord) -> None:
        with self._lock:
            self._chunks.setdefault(record.job_id, {})[record.chunk_index] = record.model_copy()

    def list_chunks(self, job_id: str) -> list[ChunkRecord]:
        with self._lock:
            chunks = self._chunks.get(job_id, {})
            return [chunks[i].model_copy() for i in sorted(chunks)]

    def read_global_state(self, job_id: str) -> GlobalState | None:
        with self._lock:
            state = self._states.get(job_id)
            return state.model_copy(deep=True) if state else None

    def write_global_state(self, job_id: str, state: GlobalState) -> None:
        with self._lock:
            self._states[job_id] = state.model_copy(deep=True)

    def record_llm_call(self, row: dict[str, Any]) -> None:
        with self._lock:
            self.llm_calls.append(dict(row))


# =============================================================================
# Supabase backend
# =============================================================================


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get Supabase client instance (cached singleton).

    Raises:
        RuntimeError: If credentials are missing or client initialization fails
    """
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for the supabase backend")
    try:
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e


class SupabaseJobStore(JobStore):
    """Store backed by Supabase tables reconstruction_jobs / reconstruction_chunks / llm_usage_log."""

    def __init__(self, client=None):
        self.client = client if client is not None else get_supabase()

    def create_job(self, record: JobRecord) -> JobRecord:
        try:
            response = (
                self.client.table(JOBS_TABLE)
                .insert(record.model_dump(mode="json"))
                .execute()
            )
            if not response.data:
                raise ValueError("No data returned from create_job")
            logger.info(f"Created job {record.id}", extra={"job_id": record.id, "strategy": record.strategy})
            return JobRecord.model_validate(response.data[0])
        except Exception as e:
            logger.error(f"Failed to create job: {e}", extra={"job_id": record.id})
            raise

    def get_job(self, job_id: str) -> JobRecord | None:
        try:
            response = self.client.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
            if response.data:
                return JobRecord.model_validate(response.data[0])
            logger.warning(f"Job {job_id} not found")
            return None
        except Exception as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            raise

    def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        payload = {
            key: value.value if hasattr(value, "value") else value for key, value in fields.items()
        }
        payload["updated_at"] = _utc_now_iso()
        try:
            response = self.client.table(JOBS_TABLE).update(payload).eq("id", job_id).execute()
            if not response.data:
                raise JobNotFound(f"Job {job_id} not found")
            return JobRecord.model_validate(response.data[0])
        except JobNotFound:
            raise
        except Exception as e:
            logger.error(f"Failed to update job: {e}", extra={"job_id": job_id})
            raise

    def list_jobs(self, limit: int = 50, offset: int = 0) -> list[JobRecord]:
        try:
            response = (
                self.client.table(JOBS_TABLE)
                .select("*")
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
            return [JobRecord.model_validate(row) for row in response.data or []]
        except Exception as e:
            logger.error(f"Failed to list jobs: {e}")
            raise

    def append_chunk(self, record: ChunkRecord) -> None:
        try:
            self.client.table(CHUNKS_TABLE).upsert(
                record.model_dump(mode="json"), on_conflict="job_id,chunk_index"
            ).execute()
        except Exception as e:
            logger.error(
                f"Failed to store chunk {record.chunk_index}: {e}",
                extra={"job_id": record.job_id, "chunk_index": record.chunk_index},
            )
            raise

    def list_chunks(self, job_id: str) -> list[ChunkRecord]:
        try:
            response = (
                self.client.table(CHUNKS_TABLE)
                .select("*")
                .eq("job_id", job_id)
                .order("chunk_index")
                .execute()
            )
            return [ChunkRecord.model_validate(row) for row in response.data or []]
        except Exception as e:
            logger.error(f"Failed to list chunks: {e}", extra={"job_id": job_id})
            raise

    def read_global_state(self, job_id: str) -> GlobalState | None:
        try:
            response = self.client.table(JOBS_TABLE).select("global_state").eq("id", job_id).execute()
            if not response.data or not response.data[0].get("global_state"):
                return None
            return GlobalState.model_validate(response.data[0]["global_state"])
        except Exception as e:
            logger.error(f"Failed to read global state: {e}", extra={"job_id": job_id})
            raise

    def write_global_state(self, job_id: str, state: GlobalState) -> None:
        try:
            self.client.table(JOBS_TABLE).update(
                {"global_state": state.model_dump(mode="json"), "updated_at": _utc_now_iso()}
            ).eq("id", job_id).execute()
        except Exception as e:
            logger.error(f"Failed to write global state: {e}", extra={"job_id": job_id})
            raise

    def record_llm_call(self, row: dict[str, Any]) -> None:
        self.client.table(USAGE_TABLE).insert(row).execute()


@lru_cache(maxsize=1)
def get_job_store() -> JobStore:
    """
    Get the configured job store (cached singleton).

    Returns:
        InMemoryJobStore for PERSISTENCE_BACKEND=memory, SupabaseJobStore for supabase

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = get_settings().PERSISTENCE_BACKEND.lower()
    if backend == "memory":
        return InMemoryJobStore(max_usage_rows=get_settings().MEMORY_USAGE_ROWS)
    if backend == "supabase":
        return SupabaseJobStore()
    raise ValueError(f"Unknown PERSISTENCE_BACKEND '{backend}'")
