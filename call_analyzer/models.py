"""Pydantic models for pipeline entities."""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

ResolutionStatus = Literal["resolved", "followup", "unresolved", "escalated", "dispatch"]

RESOLUTION_STATUSES: tuple[str, ...] = ("resolved", "followup", "unresolved", "escalated", "dispatch")

# Metadata field that marks a document as analyzed
COMPLETION_FIELD = "analysis_status"
COMPLETION_VALUE = "completed"

# Tag written when the analysis service could not produce a result
ANALYSIS_FAILED_TAG = "analysis_failed"


class SourceRecord(BaseModel):
    """A transcript awaiting (re)analysis.

    Regular records come from the documents table. Pseudo records are built
    from call_log rows during reanalysis and have no document behind them.
    """

    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    source_id: Optional[str] = None
    author: Optional[str] = None

    recording_ref: Optional[str] = None   # call_log join key (RECORDING_URL)
    ref_derived: bool = False             # True when recording_ref was not indexed in metadata
    is_pseudo: bool = False

    @property
    def has_transcript(self) -> bool:
        return bool(self.content and self.content.strip())


class AnalysisResult(BaseModel):
    """Normalized output of one analysis call."""

    summary: Optional[str] = None
    coaching: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    sentiment_score: Optional[int] = None
    resolution_status: Optional[ResolutionStatus] = None
    escalated: Optional[bool] = None
    call_type: Optional[str] = None
    persona: Optional[dict] = None

    @computed_field
    @property
    def tags_text(self) -> str:
        """Comma-joined tags, the TAGS column counterpart of TAGS_ARRAY."""
        return ",".join(self.tags)

    @property
    def degraded(self) -> bool:
        return ANALYSIS_FAILED_TAG in self.tags


class TaskOutcome(BaseModel):
    """Settled state of one unit of work run by the task runner."""

    key: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RecordError(BaseModel):
    """A per-record failure reported at the end of a run."""

    id: str
    error: str
    stage: Optional[str] = None  # reconcile stage that failed, if known


class RunSummary(BaseModel):
    """Cumulative counts for one orchestrator run."""

    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0       # empty transcripts, never sent to the analysis service
    degraded: int = 0      # succeeded, but with the placeholder result
    batches: int = 0

    start_offset: int = 0
    next_offset: int = 0   # pass as offset to resume after this run
    dry_run: bool = False

    errors: List[RecordError] = Field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at or datetime.utcnow()
        return (end - self.started_at).total_seconds()
