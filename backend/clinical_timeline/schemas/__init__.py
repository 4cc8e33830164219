"""Pydantic schemas and enums for the Clinical Timeline Engine."""

from clinical_timeline.schemas.base import (
    ChangeRate,
    EntityCategory,
    EventCategory,
    Importance,
    IssueKind,
    MentionClassification,
    OffsetUnit,
    PathologyType,
    RelationshipType,
    ResponseClassification,
    TrajectoryPattern,
    TrendShape,
)
from clinical_timeline.schemas.pipeline import (
    ExtractRequest,
    ExtractResponse,
    LearnedPatternInput,
    MentionResponse,
    PipelineRunRequest,
    PipelineRunResponse,
    ReferenceDatesInput,
)

__all__ = [
    # Enums
    "ChangeRate",
    "EntityCategory",
    "EventCategory",
    "Importance",
    "IssueKind",
    "MentionClassification",
    "OffsetUnit",
    "PathologyType",
    "RelationshipType",
    "ResponseClassification",
    "TrajectoryPattern",
    "TrendShape",
    # Pipeline API
    "ExtractRequest",
    "ExtractResponse",
    "LearnedPatternInput",
    "MentionResponse",
    "PipelineRunRequest",
    "PipelineRunResponse",
    "ReferenceDatesInput",
]
