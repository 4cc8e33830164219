"""Pydantic request/response schemas for the pipeline API."""

import datetime
from typing import Any

from pydantic import BaseModel, Field

from clinical_timeline.schemas.base import EntityCategory, IssueKind, PathologyType


# ============================================================================
# Requests
# ============================================================================


class ReferenceDatesInput(BaseModel):
    """Anchor dates used to resolve POD/HD offsets."""

    ictus: datetime.date | None = Field(default=None, description="Ictus or injury date")
    admission: datetime.date | None = Field(default=None, description="Admission date (HD#0)")
    first_procedure: datetime.date | None = Field(default=None, description="First procedure date (POD#0)")
    discharge: datetime.date | None = Field(default=None, description="Discharge date")


class LearnedPatternInput(BaseModel):
    """An externally learned extraction pattern, applied to this request only."""

    category: EntityCategory
    pattern: str = Field(..., min_length=1, max_length=500, description="Regular expression")
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class PipelineRunRequest(BaseModel):
    """Request to run the full pipeline over clinical notes."""

    notes: list[str] = Field(
        ...,
        min_length=1,
        description="Clinical note text blocks in chronological order",
    )
    pathology_hint: PathologyType | None = Field(
        default=None,
        description="Pathology classification; targets the pattern libraries",
    )
    reference_dates: ReferenceDatesInput | None = None
    prognostic_expectation: float | None = Field(
        default=None,
        ge=0.0,
        le=100.0,
        description="Expected discharge functional status on the 0-100 scale",
    )
    learned_patterns: list[LearnedPatternInput] = Field(default_factory=list)


class ExtractRequest(BaseModel):
    """Request to extract mentions from a single note."""

    text: str = Field(..., min_length=1, max_length=100000, description="Clinical note text")
    pathology_hint: PathologyType | None = None
    reference_dates: ReferenceDatesInput | None = None
    learned_patterns: list[LearnedPatternInput] = Field(default_factory=list)


# ============================================================================
# Responses
# ============================================================================


class MentionResponse(BaseModel):
    name: str
    category: EntityCategory
    raw_span: str
    start: int
    end: int
    date: datetime.date | None = None
    confidence: float
    classification: str
    relative_offset: str | None = None
    unresolved_offset: bool = False
    negation_trigger: str | None = None
    value: float | None = None
    scale: str | None = None
    source: str


class ExtractResponse(BaseModel):
    mentions: list[MentionResponse]
    mention_count: int
    processing_time_ms: float


class PipelineIssueResponse(BaseModel):
    kind: IssueKind
    stage: str
    message: str


class TimelineResponse(BaseModel):
    events: list[dict[str, Any]]
    milestones: list[dict[str, Any]]
    relationships: list[dict[str, Any]]
    metadata: dict[str, Any]
    unresolved_event_ids: list[str] = Field(default_factory=list)
    error: str | None = None


class TreatmentResponsesResponse(BaseModel):
    responses: list[dict[str, Any]]
    protocol_compliance: dict[str, Any] | None = None
    summary: dict[str, Any]
    error: str | None = None


class FunctionalEvolutionResponse(BaseModel):
    has_data: bool
    score_timeline: list[dict[str, Any]]
    status_changes: list[dict[str, Any]]
    trajectory: dict[str, Any] | None = None
    milestones: dict[str, Any]
    prognostic_comparison: dict[str, Any] | None = None
    summary: dict[str, Any]
    error: str | None = None


class PipelineRunResponse(BaseModel):
    """Full structured pipeline output."""

    request_id: str
    entities: dict[str, list[dict[str, Any]]]
    timeline: TimelineResponse
    treatment_responses: TreatmentResponsesResponse
    functional_evolution: FunctionalEvolutionResponse
    reference_dates: dict[str, str | None]
    issues: list[PipelineIssueResponse]
    quality: dict[str, Any]
    processing_time_ms: float
