"""Clinical timeline pipeline orchestrator.

Runs the stages strictly forward:

    extraction -> deduplication -> reference linking -> causal timeline
    -> treatment response -> functional trajectory

Every stage is localized: an unexpected exception is logged, recorded as
a STAGE_FAILURE issue and replaced by an empty result, so the pipeline
always returns a structured (possibly degraded) result.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any, TypeVar

from clinical_timeline.schemas.base import EntityCategory, IssueKind, PathologyType
from clinical_timeline.services.causal_timeline import (
    CausalTimeline,
    CausalTimelineBuilder,
    get_timeline_builder,
)
from clinical_timeline.services.deduplication import (
    CanonicalEntity,
    SemanticDeduplicator,
    get_deduplicator,
)
from clinical_timeline.services.entity_extraction import (
    EntityExtractor,
    LearnedPattern,
    Mention,
    get_entity_extractor,
)
from clinical_timeline.services.functional_trajectory import (
    FunctionalEvolution,
    FunctionalTrajectoryAnalyzer,
    get_trajectory_analyzer,
)
from clinical_timeline.services.knowledge_base import ClinicalKnowledgeBase, get_knowledge_base
from clinical_timeline.services.reference_linking import LinkResult, ReferenceLinker, get_reference_linker
from clinical_timeline.services.similarity import SimilarityFunction, clinical_similarity
from clinical_timeline.services.temporal_context import (
    ReferenceDates,
    extract_reference_dates,
    parse_clinical_date,
)
from clinical_timeline.services.treatment_response import (
    TreatmentResponseResult,
    TreatmentResponseTracker,
    get_treatment_tracker,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineIssue:
    """A degraded-output condition recorded during a run."""

    kind: IssueKind
    stage: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "stage": self.stage, "message": self.message}


@dataclass
class PipelineResult:
    """Structured output of one pipeline run."""

    entities: dict[EntityCategory, list[CanonicalEntity]] = field(default_factory=dict)
    timeline: CausalTimeline = field(default_factory=CausalTimeline)
    treatment_responses: TreatmentResponseResult = field(default_factory=TreatmentResponseResult)
    functional_evolution: FunctionalEvolution = field(default_factory=FunctionalEvolution)
    mentions: list[Mention] = field(default_factory=list)
    reference_dates: ReferenceDates = field(default_factory=ReferenceDates)
    issues: list[PipelineIssue] = field(default_factory=list)
    quality: dict[str, Any] = field(default_factory=dict)

    def all_entities(self) -> list[CanonicalEntity]:
        return [e for entities in self.entities.values() for e in entities]

    def entities_of(self, category: EntityCategory) -> list[CanonicalEntity]:
        return self.entities.get(category, [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": {
                category.value: [e.to_dict() for e in entities]
                for category, entities in self.entities.items()
            },
            "timeline": self.timeline.to_dict(),
            "treatment_responses": self.treatment_responses.to_dict(),
            "functional_evolution": self.functional_evolution.to_dict(),
            "reference_dates": self.reference_dates.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "quality": dict(self.quality),
        }


def coerce_reference_dates(value: ReferenceDates | Mapping[str, Any] | None) -> ReferenceDates:
    """Build ReferenceDates from a dataclass, a mapping of dates/strings or None.

    Accepts the key ``procedure`` as an alias of ``first_procedure``.
    """
    if value is None:
        return ReferenceDates()
    if isinstance(value, ReferenceDates):
        return value

    parsed: dict[str, date] = {}
    for key, raw in value.items():
        name = "first_procedure" if key in ("procedure", "firstProcedure") else key
        if name not in ("ictus", "admission", "first_procedure", "discharge") or raw is None:
            continue
        if isinstance(raw, date):
            parsed[name] = raw
        else:
            parsed_date = parse_clinical_date(str(raw))
            if parsed_date is not None:
                parsed[name] = parsed_date
    return ReferenceDates(**parsed)


class ClinicalTimelinePipeline:
    """Runs the full text-intelligence pipeline over clinical notes.

    Components are built once from the knowledge base and hold only
    immutable configuration, so one pipeline may serve concurrent calls.
    With the default knowledge base and similarity the shared service
    singletons are used.
    """

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        similarity: SimilarityFunction = clinical_similarity,
        extractor: EntityExtractor | None = None,
    ):
        if knowledge_base is None and similarity is clinical_similarity:
            self.knowledge_base = get_knowledge_base()
            self.extractor = extractor or get_entity_extractor()
            self.deduplicator = get_deduplicator()
            self.linker = get_reference_linker()
            self.timeline_builder = get_timeline_builder()
            self.treatment_tracker = get_treatment_tracker()
            self.trajectory_analyzer = get_trajectory_analyzer()
            return

        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.extractor = extractor or EntityExtractor(self.knowledge_base)
        self.deduplicator = SemanticDeduplicator(self.knowledge_base, similarity)
        self.linker = ReferenceLinker(self.knowledge_base, similarity)
        self.timeline_builder = CausalTimelineBuilder(self.knowledge_base)
        self.treatment_tracker = TreatmentResponseTracker(self.knowledge_base)
        self.trajectory_analyzer = FunctionalTrajectoryAnalyzer(self.knowledge_base)

    @staticmethod
    def _stage(
        name: str,
        issues: list[PipelineIssue],
        default_factory: Callable[[], T],
        fn: Callable[..., T],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Pipeline stage '{name}' failed: {e}", exc_info=True)
            issues.append(PipelineIssue(IssueKind.STAGE_FAILURE, name, str(e)))
            return default_factory()

    @staticmethod
    def _validate_notes(notes: Any, issues: list[PipelineIssue]) -> list[str]:
        if isinstance(notes, str):
            notes = [notes]
        if notes is None or not isinstance(notes, Iterable):
            issues.append(PipelineIssue(IssueKind.MALFORMED_INPUT, "input", "Notes must be text"))
            return []

        valid: list[str] = []
        for index, note in enumerate(notes):
            if not isinstance(note, str) or not note.strip():
                issues.append(PipelineIssue(
                    IssueKind.MALFORMED_INPUT,
                    "input",
                    f"Note {index} is empty or not text",
                ))
                valid.append("")
                continue
            valid.append(note)
        if not any(valid):
            issues.append(PipelineIssue(IssueKind.MALFORMED_INPUT, "input", "No note text supplied"))
        return valid

    @staticmethod
    def _validate_pathology(
        pathology_hint: PathologyType | str | None, issues: list[PipelineIssue]
    ) -> PathologyType | None:
        if pathology_hint is None or isinstance(pathology_hint, PathologyType):
            return pathology_hint
        try:
            return PathologyType(str(pathology_hint).strip().upper())
        except ValueError:
            issues.append(PipelineIssue(
                IssueKind.MALFORMED_INPUT,
                "input",
                f"Unknown pathology hint '{pathology_hint}'; scanning untargeted",
            ))
            return None

    def _link(
        self,
        mentions: list[Mention],
        entities: list[CanonicalEntity],
        issues: list[PipelineIssue],
    ) -> list[CanonicalEntity]:
        references = [m for m in mentions if m.is_reference]
        result: LinkResult = self.linker.link(references, entities)
        promoted = self.linker.promote_unlinked(result.unlinked, result.entities)
        for mention in result.unlinked:
            issues.append(PipelineIssue(
                IssueKind.NO_SIMILARITY_MATCH,
                "reference_linking",
                f"Reference '{mention.raw_span}' kept as a standalone {mention.category.value}",
            ))
        return result.entities + promoted

    @staticmethod
    def _quality(
        mentions: list[Mention],
        entities: list[CanonicalEntity],
        timeline: CausalTimeline,
        issues: list[PipelineIssue],
    ) -> dict[str, Any]:
        real_events = [e for e in timeline.events if not e.is_synthetic]
        dated = [e for e in real_events if e.timestamp is not None]
        return {
            "mention_count": len(mentions),
            "entity_count": len(entities),
            "reference_count": sum(1 for m in mentions if m.is_reference),
            "standalone_reference_count": sum(1 for e in entities if e.is_standalone_reference),
            "event_count": len(timeline.events),
            "dated_event_share": round(len(dated) / len(real_events), 3) if real_events else 0.0,
            "mean_entity_confidence": (
                round(sum(e.confidence for e in entities) / len(entities), 3) if entities else 0.0
            ),
            "issue_count": len(issues),
            "degraded": bool(issues),
        }

    def run(
        self,
        notes: Iterable[str] | str,
        pathology_hint: PathologyType | str | None = None,
        reference_dates: ReferenceDates | Mapping[str, Any] | None = None,
        prognostic_expectation: float | None = None,
        learned_patterns: Iterable[LearnedPattern] | None = None,
    ) -> PipelineResult:
        """Run the pipeline over one or more notes.

        Args:
            notes: Note text blocks (a single string is one note).
            pathology_hint: Upstream pathology classification.
            reference_dates: Caller-supplied anchor dates; dates found in
                the narrative only fill the gaps.
            prognostic_expectation: Expected discharge functional status (0-100).
            learned_patterns: Extra patterns merged into this call only.

        Returns:
            PipelineResult. Never raises for content-level problems.
        """
        issues: list[PipelineIssue] = []
        note_texts = self._validate_notes(notes, issues)
        pathology = self._validate_pathology(pathology_hint, issues)

        anchors = self._stage(
            "reference_dates",
            issues,
            ReferenceDates,
            lambda: coerce_reference_dates(reference_dates).merged_with(
                extract_reference_dates("\n".join(note_texts))
            ),
        )

        mentions = self._stage(
            "extraction",
            issues,
            list,
            self.extractor.extract_notes,
            note_texts,
            pathology,
            anchors,
            list(learned_patterns or []),
        )
        for mention in mentions:
            if mention.temporal is not None and mention.temporal.unresolved_offset:
                issues.append(PipelineIssue(
                    IssueKind.UNRESOLVED_TEMPORAL_REFERENCE,
                    "extraction",
                    f"'{mention.raw_span}' at {mention.temporal.relative_offset.label} has no reference date",
                ))

        entities = self._stage("deduplication", issues, list, self.deduplicator.deduplicate, mentions)
        entities = self._stage(
            "reference_linking", issues, lambda: list(entities), self._link, mentions, entities, issues
        )

        timeline = self._stage("timeline", issues, CausalTimeline, self.timeline_builder.build, entities, anchors)
        if timeline.error:
            issues.append(PipelineIssue(IssueKind.STAGE_FAILURE, "timeline", timeline.error))

        responses = self._stage(
            "treatment_response",
            issues,
            TreatmentResponseResult,
            self.treatment_tracker.track,
            timeline,
            pathology,
        )
        if responses.error:
            issues.append(PipelineIssue(IssueKind.STAGE_FAILURE, "treatment_response", responses.error))

        evolution = self._stage(
            "functional_trajectory",
            issues,
            FunctionalEvolution,
            self.trajectory_analyzer.analyze,
            entities,
            timeline,
            prognostic_expectation,
        )
        if evolution.error:
            issues.append(PipelineIssue(IssueKind.STAGE_FAILURE, "functional_trajectory", evolution.error))
        elif not evolution.has_data:
            issues.append(PipelineIssue(
                IssueKind.INSUFFICIENT_DATA,
                "functional_trajectory",
                f"{len(evolution.score_timeline)} dated functional score sample(s); at least 2 required",
            ))

        by_category: dict[EntityCategory, list[CanonicalEntity]] = {}
        for entity in entities:
            by_category.setdefault(entity.category, []).append(entity)

        result = PipelineResult(
            entities=by_category,
            timeline=timeline,
            treatment_responses=responses,
            functional_evolution=evolution,
            mentions=mentions,
            reference_dates=anchors,
            issues=issues,
            quality=self._quality(mentions, entities, timeline, issues),
        )
        logger.info(
            f"Pipeline run: {len(note_texts)} notes, {len(mentions)} mentions, "
            f"{len(entities)} entities, {len(timeline.events)} events, {len(issues)} issues"
        )
        return result


# Singleton instance
_pipeline: ClinicalTimelinePipeline | None = None


def get_pipeline() -> ClinicalTimelinePipeline:
    """Get the singleton clinical timeline pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ClinicalTimelinePipeline()
    return _pipeline


def reset_pipeline() -> None:
    """Reset the singleton pipeline (mainly for testing)."""
    global _pipeline
    _pipeline = None
