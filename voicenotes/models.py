"""Pydantic models for the note processing pipeline."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AnalysisTask(BaseModel):
    """Single actionable task extracted from a note."""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., description="Task title")
    urgency: Literal["NOW", "SOON", "LATER"] = Field(..., description="How soon it must happen")
    domain: Literal["WORK", "PERS", "PROJ", "IDEA"] = Field(..., description="Life domain")
    due_date: Optional[str] = Field(None, alias="dueDate", description="Due date as spoken or ISO")
    assigned_to: Optional[str] = Field(None, alias="assignedTo", description="Assignee if not the author")
    context: Optional[str] = Field(None, description="Surrounding context")


class DraftMessage(BaseModel):
    """Message the author intends to send."""

    recipient: str
    subject: str
    body: str


class MentionedPerson(BaseModel):
    """Person mentioned in the note."""

    name: str
    context: str
    relationship: Optional[str] = None


class AnalysisMetadata(BaseModel):
    """Self-reported quality of the analysis."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    overall_confidence: Optional[float] = Field(
        None, ge=0, le=1, alias="overallConfidence", description="Model confidence 0-1"
    )


class NoteAnalysis(BaseModel):
    """Structured analysis of one voice note transcript."""
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(..., description="Short summary")
    mood: Literal["positive", "neutral", "negative"] = Field(..., description="Overall sentiment")
    topic: str = Field(..., description="Primary topic")
    the_one_thing: Optional[str] = Field(..., alias="theOneThing", description="Single most important priority")
    tasks: List[AnalysisTask] = Field(default_factory=list)
    draft_messages: List[DraftMessage] = Field(default_factory=list, alias="draftMessages")
    people: List[MentionedPerson] = Field(default_factory=list)
    recorded_at: str = Field(..., alias="recordedAt", description="Recording timestamp (ISO)")
    analysis_metadata: Optional[AnalysisMetadata] = Field(None, alias="analysisMetadata")

    def confidence(self, default: float) -> float:
        if self.analysis_metadata and self.analysis_metadata.overall_confidence is not None:
            return self.analysis_metadata.overall_confidence
        return default

    def to_storage(self) -> dict:
        """JSON-ready dict using the wire (camelCase) field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ProcessingResult(BaseModel):
    """Outcome of processing a single note."""

    success: bool = Field(..., description="Whether the note ended up processed")
    note_id: Optional[str] = Field(None, description="Note ID")
    error: Optional[str] = Field(None, description="Error message if failed")
    error_category: Optional[str] = Field(None, description="Classified error category")
    warning: Optional[str] = Field(None, description="Non-fatal issue (e.g. partial validation)")
    transcription: Optional[str] = Field(None, description="Transcript text")
    analysis: Optional[dict] = Field(None, description="Structured analysis")
    skipped: bool = Field(default=False, description="Lock held elsewhere; try again later")
    processing_time_sec: float = Field(default=0.0)


class BatchMetrics(BaseModel):
    total_time: float = 0.0
    average_processing_time: float = 0.0
    success_rate: float = 0.0
    error_breakdown: dict = Field(default_factory=dict)


class BatchResult(BaseModel):
    """Outcome of one batch run."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    metrics: BatchMetrics = Field(default_factory=BatchMetrics)


class HealthMetrics(BaseModel):
    """Processing health snapshot."""

    status: Literal["healthy", "degraded", "unhealthy", "critical"]
    circuit_breaker_state: dict
    success_rate: float
    average_latency: float
    currently_processing: int
    error_breakdown_by_category: dict
    stuck_notes: int
    rate_limiter_backend: str
    timestamp: datetime = Field(default_factory=datetime.now)
