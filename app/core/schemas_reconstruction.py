"""Schemas for reconstruction requests, strategy plans, job state and stream events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Aggressiveness = Literal["conservative", "aggressive"]

DIAGNOSIS_LABELS: tuple[str, ...] = (
    "vague-claim",
    "weak-argument",
    "false-claim",
    "obscure-but-sound",
    "needs-empirical-support",
    "elliptical",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StrategyKind(str, Enum):
    """Reconstruction strategies, in the order the selector considers them."""

    UNIVERSAL_EXPANSION = "universal-expansion"
    POSITION_LIST = "position-list"
    OUTLINE_FIRST = "outline-first"
    CROSS_CHUNK = "cross-chunk"
    DIRECT_INSTRUCTION = "direct-instruction"
    DIAGNOSTIC = "diagnostic-reconstruction"


class JobStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED})


def _dedupe(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


# =============================================================================
# Documents and chunks
# =============================================================================


class Chunk(BaseModel):
    """A bounded, ordered segment of a document. Never mutated once produced."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    text: str
    word_count: int = Field(..., ge=0)


class Outline(BaseModel):
    """Structural skeleton extracted once per outline-first job."""

    thesis: str = Field(..., min_length=1)
    key_points: list[str] = Field(..., min_length=1)
    key_terms: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)

    @field_validator("key_points")
    @classmethod
    def _strip_points(cls, value: list[str]) -> list[str]:
        points = [p.strip() for p in value if p and p.strip()]
        if not points:
            raise ValueError("outline needs at least one key point")
        return points

    @field_validator("key_terms")
    @classmethod
    def _unique_terms(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class GlobalStateUpdate(BaseModel):
    """Facts a chunk pass established, to be merged into the running state."""

    thesis: str | None = None
    key_points: list[str] = Field(default_factory=list)
    key_terms: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)


class GlobalState(BaseModel):
    """Cross-chunk memory threaded through a cross-chunk job."""

    thesis: str = ""
    key_points: list[str] = Field(default_factory=list)
    key_terms: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    chunk_outputs: dict[int, str] = Field(default_factory=dict)
    provider: str | None = None
    session_id: str | None = None

    def apply_update(self, update: GlobalStateUpdate) -> "GlobalState":
        """Return a new state with the update merged in; earlier facts are kept."""
        return self.model_copy(
            update={
                "thesis": self.thesis or (update.thesis or "").strip(),
                "key_points": _dedupe(self.key_points + update.key_points),
                "key_terms": _dedupe(self.key_terms + update.key_terms),
                "constraints": _dedupe(self.constraints + update.constraints),
                "decisions": _dedupe(self.decisions + update.decisions),
            }
        )

    def prompt_view(self) -> dict[str, Any]:
        """State as shown to the provider (chunk outputs are too large to resend)."""
        return self.model_dump(include={"thesis", "key_points", "key_terms", "constraints", "decisions"})


class CrossChunkResponse(BaseModel):
    section_output: str = Field(..., min_length=1)
    updated_state: GlobalStateUpdate = Field(default_factory=GlobalStateUpdate)


class PositionSelection(BaseModel):
    index: int
    text: str = Field(..., min_length=1)


class PositionBatchResponse(BaseModel):
    selected: list[PositionSelection] = Field(default_factory=list)


# =============================================================================
# Requests and strategy plans
# =============================================================================


class ReconstructionRequest(BaseModel):
    """Inbound reconstruction request, validated at the API boundary."""

    text: str = Field(default="", description="Document to reconstruct")
    custom_instructions: str | None = Field(default=None, description="Free-form user instructions")
    fidelity_level: Aggressiveness | None = Field(default=None)
    target_domain: str | None = Field(default=None)
    provider: str | None = Field(default=None, description="Provider name or zhi alias")
    stream: bool = Field(default=False)

    @field_validator("text", mode="before")
    @classmethod
    def _none_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("custom_instructions", "target_domain", "provider")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class UniversalExpansionPlan(BaseModel):
    kind: Literal["universal-expansion"] = "universal-expansion"
    target_word_count: int = Field(..., ge=1)
    target_source: str = "explicit"
    aggressiveness: Aggressiveness = "aggressive"


class PositionListPlan(BaseModel):
    kind: Literal["position-list"] = "position-list"


class OutlineFirstPlan(BaseModel):
    kind: Literal["outline-first"] = "outline-first"
    aggressiveness: Aggressiveness = "aggressive"


class CrossChunkPlan(BaseModel):
    kind: Literal["cross-chunk"] = "cross-chunk"
    aggressiveness: Aggressiveness = "aggressive"
    max_words_per_chunk: int = Field(default=1000, ge=1)


class DirectInstructionPlan(BaseModel):
    kind: Literal["direct-instruction"] = "direct-instruction"


class DiagnosticPlan(BaseModel):
    kind: Literal["diagnostic-reconstruction"] = "diagnostic-reconstruction"
    aggressiveness: Aggressiveness = "conservative"


StrategyPlan = Annotated[
    Union[
        UniversalExpansionPlan,
        PositionListPlan,
        OutlineFirstPlan,
        CrossChunkPlan,
        DirectInstructionPlan,
        DiagnosticPlan,
    ],
    Field(discriminator="kind"),
]


class JobInput(BaseModel):
    """The immutable document and options a job was submitted with."""

    model_config = ConfigDict(frozen=True)

    text: str
    custom_instructions: str | None = None
    fidelity_level: Aggressiveness | None = None
    target_domain: str | None = None
    provider: str | None = None
    input_word_count: int = 0


# =============================================================================
# Persistence records
# =============================================================================


class JobRecord(BaseModel):
    """Durable job/session record."""

    id: str
    status: JobStatus = JobStatus.CREATED
    strategy: str | None = None
    input_text: str = ""
    custom_instructions: str | None = None
    fidelity_level: str | None = None
    target_domain: str | None = None
    provider: str | None = None
    input_word_count: int = 0
    max_words_per_chunk: int | None = None
    chunks_processed: int = 0
    total_chunks: int = 0
    partial_output: str = ""
    output: str | None = None
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ChunkRecord(BaseModel):
    """Per-chunk (or per-section) result, keyed by (job_id, chunk_index)."""

    job_id: str
    chunk_index: int = Field(..., ge=0)
    input_text: str = ""
    output_text: str = ""
    word_count: int = 0
    updated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Stream events
# =============================================================================


class ProgressEvent(BaseModel):
    """Informational progress; ``content`` carries a finished unit's output when there is one."""

    type: Literal["progress"] = "progress"
    session_id: str = ""
    strategy: str
    stage: str
    message: str | None = None
    index: int | None = None
    total: int | None = None
    title: str | None = None
    content: str | None = None
    cumulative_word_count: int = 0
    progress: float = 0.0


class AbortedEvent(BaseModel):
    type: Literal["aborted"] = "aborted"
    session_id: str = ""
    strategy: str
    partial_output: str = ""
    chunks_processed: int = 0
    word_count: int = 0


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    session_id: str = ""
    strategy: str
    output: str
    input_word_count: int = 0
    output_word_count: int = 0
    chunks_processed: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    session_id: str = ""
    strategy: str | None = None
    message: str
    error_type: str = "ReconstructionError"
    status_code: int = 500


StreamEvent = Annotated[
    Union[ProgressEvent, AbortedEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

TerminalEvent = Union[AbortedEvent, CompleteEvent, ErrorEvent]
