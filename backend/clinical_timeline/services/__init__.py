"""Services for the Clinical Timeline Engine.

The deterministic text-intelligence core, leaves first:
- NegationClassifier: NegEx-style negation of candidate mentions
- TemporalContextResolver: new event vs. reference, POD/HD resolution
- EntityExtractor: pattern-library mention extraction
- SemanticDeduplicator: merges mentions into canonical entities
- ReferenceLinker: attaches back-references to canonical entities
- CausalTimelineBuilder: sorted events, milestones, relationships
- TreatmentResponseTracker: intervention/outcome pairs, protocol checks
- FunctionalTrajectoryAnalyzer: functional score trajectory
- ClinicalTimelinePipeline: runs all of the above
"""

from clinical_timeline.services.causal_timeline import (
    CausalTimeline,
    CausalTimelineBuilder,
    Milestone,
    Relationship,
    TimelineConfig,
    TimelineEvent,
    get_timeline_builder,
    reset_timeline_builder,
)
from clinical_timeline.services.deduplication import (
    CanonicalEntity,
    DeduplicationConfig,
    SemanticDeduplicator,
    get_deduplicator,
    reset_deduplicator,
)
from clinical_timeline.services.entity_extraction import (
    EntityExtractor,
    ExtractionConfig,
    LearnedPattern,
    Mention,
    get_entity_extractor,
    reset_entity_extractor,
)
from clinical_timeline.services.functional_trajectory import (
    FunctionalEvolution,
    FunctionalScoreSample,
    FunctionalTrajectoryAnalyzer,
    StatusChange,
    Trajectory,
    get_trajectory_analyzer,
    reset_trajectory_analyzer,
)
from clinical_timeline.services.knowledge_base import (
    AnticoagulationRule,
    ClinicalKnowledgeBase,
    PatternSpec,
    ProphylaxisRule,
    ProtocolItem,
    ScoreScale,
    build_default_knowledge_base,
    get_knowledge_base,
    reset_knowledge_base,
)
from clinical_timeline.services.negation import (
    NegationClassifier,
    NegationConfig,
    NegationResult,
    get_negation_classifier,
    reset_negation_classifier,
)
from clinical_timeline.services.pipeline import (
    ClinicalTimelinePipeline,
    PipelineIssue,
    PipelineResult,
    get_pipeline,
    reset_pipeline,
)
from clinical_timeline.services.reference_linking import (
    LinkingConfig,
    LinkResult,
    ReferenceLinker,
    get_reference_linker,
    reset_reference_linker,
)
from clinical_timeline.services.similarity import clinical_similarity
from clinical_timeline.services.temporal_context import (
    ReferenceDates,
    RelativeOffset,
    TemporalContext,
    TemporalContextResolver,
    extract_reference_dates,
    get_temporal_resolver,
    reset_temporal_resolver,
)
from clinical_timeline.services.treatment_response import (
    ProtocolCompliance,
    ProtocolComplianceItem,
    TreatmentResponsePair,
    TreatmentResponseResult,
    TreatmentResponseTracker,
    get_treatment_tracker,
    reset_treatment_tracker,
)

__all__ = [
    # Knowledge base
    "AnticoagulationRule",
    "ClinicalKnowledgeBase",
    "PatternSpec",
    "ProphylaxisRule",
    "ProtocolItem",
    "ScoreScale",
    "build_default_knowledge_base",
    "get_knowledge_base",
    "reset_knowledge_base",
    # Negation
    "NegationClassifier",
    "NegationConfig",
    "NegationResult",
    "get_negation_classifier",
    "reset_negation_classifier",
    # Temporal context
    "ReferenceDates",
    "RelativeOffset",
    "TemporalContext",
    "TemporalContextResolver",
    "extract_reference_dates",
    "get_temporal_resolver",
    "reset_temporal_resolver",
    # Extraction
    "EntityExtractor",
    "ExtractionConfig",
    "LearnedPattern",
    "Mention",
    "get_entity_extractor",
    "reset_entity_extractor",
    # Similarity
    "clinical_similarity",
    # Deduplication
    "CanonicalEntity",
    "DeduplicationConfig",
    "SemanticDeduplicator",
    "get_deduplicator",
    "reset_deduplicator",
    # Reference linking
    "LinkingConfig",
    "LinkResult",
    "ReferenceLinker",
    "get_reference_linker",
    "reset_reference_linker",
    # Timeline
    "CausalTimeline",
    "CausalTimelineBuilder",
    "Milestone",
    "Relationship",
    "TimelineConfig",
    "TimelineEvent",
    "get_timeline_builder",
    "reset_timeline_builder",
    # Treatment response
    "ProtocolCompliance",
    "ProtocolComplianceItem",
    "TreatmentResponsePair",
    "TreatmentResponseResult",
    "TreatmentResponseTracker",
    "get_treatment_tracker",
    "reset_treatment_tracker",
    # Functional trajectory
    "FunctionalEvolution",
    "FunctionalScoreSample",
    "FunctionalTrajectoryAnalyzer",
    "StatusChange",
    "Trajectory",
    "get_trajectory_analyzer",
    "reset_trajectory_analyzer",
    # Pipeline
    "ClinicalTimelinePipeline",
    "PipelineIssue",
    "PipelineResult",
    "get_pipeline",
    "reset_pipeline",
]
