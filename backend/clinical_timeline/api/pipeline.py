"""Clinical Timeline Pipeline API Endpoints.

Thin HTTP surface over the deterministic pipeline:
- Run: full pipeline (entities, timeline, treatment responses,
  functional evolution) over one or more notes
- Extract: mentions only, for a single note
"""

import logging
import time
from uuid import uuid4

from fastapi import APIRouter

from clinical_timeline.schemas.pipeline import (
    ExtractRequest,
    ExtractResponse,
    LearnedPatternInput,
    MentionResponse,
    PipelineRunRequest,
    PipelineRunResponse,
    ReferenceDatesInput,
)
from clinical_timeline.services.entity_extraction import LearnedPattern, Mention, get_entity_extractor
from clinical_timeline.services.pipeline import get_pipeline
from clinical_timeline.services.temporal_context import ReferenceDates, extract_reference_dates

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


# ============================================================================
# Helpers
# ============================================================================


def _to_reference_dates(value: ReferenceDatesInput | None) -> ReferenceDates:
    if value is None:
        return ReferenceDates()
    return ReferenceDates(**value.model_dump())


def _to_learned(patterns: list[LearnedPatternInput]) -> list[LearnedPattern]:
    return [LearnedPattern(p.category, p.pattern, p.confidence) for p in patterns]


def _mention_response(mention: Mention) -> MentionResponse:
    temporal = mention.temporal
    return MentionResponse(
        name=mention.name,
        category=mention.category,
        raw_span=mention.raw_span,
        start=mention.start,
        end=mention.end,
        date=mention.date,
        confidence=round(mention.confidence, 3),
        classification=mention.classification.value,
        relative_offset=temporal.relative_offset.label if temporal and temporal.relative_offset else None,
        unresolved_offset=bool(temporal and temporal.unresolved_offset),
        negation_trigger=mention.negation.trigger if mention.negation else None,
        value=mention.value,
        scale=mention.scale,
        source=mention.source,
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/run",
    response_model=PipelineRunResponse,
    summary="Run the clinical timeline pipeline",
    description="Extract, deduplicate and link entities, then build the causal timeline, "
    "treatment responses and functional trajectory.",
)
async def run_pipeline(request: PipelineRunRequest) -> PipelineRunResponse:
    """Run the full pipeline over the supplied notes.

    Content-level problems never fail the request; they are reported in
    ``issues`` and reflected in ``quality``.
    """
    start_time = time.perf_counter()
    request_id = str(uuid4())

    result = get_pipeline().run(
        request.notes,
        pathology_hint=request.pathology_hint,
        reference_dates=_to_reference_dates(request.reference_dates),
        prognostic_expectation=request.prognostic_expectation,
        learned_patterns=_to_learned(request.learned_patterns),
    )

    processing_time_ms = (time.perf_counter() - start_time) * 1000
    logger.info(
        f"Pipeline request {request_id}: {len(request.notes)} notes, "
        f"{len(result.issues)} issues, {processing_time_ms:.1f}ms"
    )
    return PipelineRunResponse(
        request_id=request_id,
        processing_time_ms=round(processing_time_ms, 2),
        **result.to_dict(),
    )


@router.post(
    "/extract",
    response_model=ExtractResponse,
    summary="Extract clinical mentions",
    description="Pattern-based mention extraction with negation and temporal context.",
)
async def extract_mentions(request: ExtractRequest) -> ExtractResponse:
    """Extract mentions from one note without building downstream structures."""
    start_time = time.perf_counter()

    reference_dates = _to_reference_dates(request.reference_dates).merged_with(
        extract_reference_dates(request.text)
    )
    mentions = get_entity_extractor().extract(
        request.text,
        pathology_hint=request.pathology_hint,
        reference_dates=reference_dates,
        learned_patterns=_to_learned(request.learned_patterns),
    )

    return ExtractResponse(
        mentions=[_mention_response(m) for m in mentions],
        mention_count=len(mentions),
        processing_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
