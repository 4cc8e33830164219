"""End-to-end tests for the clinical timeline pipeline."""

from datetime import date

import pytest

from clinical_timeline.schemas.base import (
    EntityCategory,
    IssueKind,
    PathologyType,
    RelationshipType,
    ResponseClassification,
)
from clinical_timeline.services.causal_timeline import get_timeline_builder
from clinical_timeline.services.deduplication import get_deduplicator
from clinical_timeline.services.entity_extraction import LearnedPattern, get_entity_extractor
from clinical_timeline.services.functional_trajectory import get_trajectory_analyzer
from clinical_timeline.services.knowledge_base import get_knowledge_base
from clinical_timeline.services.pipeline import (
    ClinicalTimelinePipeline,
    coerce_reference_dates,
    get_pipeline,
    reset_pipeline,
)
from clinical_timeline.services.reference_linking import get_reference_linker
from clinical_timeline.services.temporal_context import ReferenceDates
from clinical_timeline.services.treatment_response import get_treatment_tracker

SAH_NOTES = [
    "Started nimodipine POD#0.",
    "POD#6 vasospasm, started induced hypertension.",
    "POD#8 resolved.",
]


@pytest.fixture
def pipeline(knowledge_base) -> ClinicalTimelinePipeline:
    return ClinicalTimelinePipeline(knowledge_base)


def _issue_kinds(result):
    return [issue.kind for issue in result.issues]


def _relationships(result, relationship_type):
    return [r for r in result.timeline.relationships if r.type == relationship_type]


class TestCoerceReferenceDates:
    """Tests for caller-supplied anchor dates."""

    def test_from_mapping(self):
        dates = coerce_reference_dates({"admission": "2024-03-01", "procedure": date(2024, 3, 2)})
        assert dates.admission == date(2024, 3, 1)
        assert dates.first_procedure == date(2024, 3, 2)

    def test_unknown_keys_and_bad_dates_ignored(self):
        dates = coerce_reference_dates({"surgeon": "2024-03-01", "discharge": "not a date"})
        assert dates.is_empty()

    def test_none(self):
        assert coerce_reference_dates(None) == ReferenceDates()


class TestVasospasmCourse:
    """Nimodipine, vasospasm on POD#6 treated with induced hypertension."""

    @pytest.fixture
    def result(self, pipeline):
        return pipeline.run(
            SAH_NOTES,
            pathology_hint=PathologyType.SAH,
            reference_dates={"first_procedure": "2024-03-02"},
        )

    def test_entities(self, result):
        assert [e.canonical_name for e in result.entities_of(EntityCategory.MEDICATION)] == ["nimodipine"]
        vasospasm = result.entities_of(EntityCategory.COMPLICATION)[0]
        assert vasospasm.canonical_name == "vasospasm"
        assert vasospasm.date == date(2024, 3, 8)
        assert result.entities_of(EntityCategory.INTERVENTION)[0].date == date(2024, 3, 8)

    def test_trigger_relationship(self, result):
        triggers = _relationships(result, RelationshipType.TRIGGERS)
        assert len(triggers) == 1
        source = result.timeline.get_event(triggers[0].from_event_id)
        target = result.timeline.get_event(triggers[0].to_event_id)
        assert source.description == "vasospasm"
        assert target.description == "induced hypertension"

    def test_unlinked_reference_kept_standalone(self, result):
        status = result.entities_of(EntityCategory.CLINICAL_STATUS)
        assert len(status) == 1
        assert status[0].is_standalone_reference
        assert status[0].date == date(2024, 3, 10)
        assert IssueKind.NO_SIMILARITY_MATCH in _issue_kinds(result)

    def test_treatment_responses(self, result):
        by_name = {r.intervention.name: r for r in result.treatment_responses.responses}
        assert by_name["nimodipine"].classification == ResponseClassification.WORSENED
        induced = by_name["induced hypertension"]
        assert induced.classification == ResponseClassification.IMPROVED
        assert induced.effectiveness.score == 95.0
        assert induced.rating == "excellent"

    def test_protocol_compliance(self, result):
        compliance = result.treatment_responses.protocol_compliance
        assert compliance.pathology == PathologyType.SAH
        assert compliance.percentage == 0.0

    def test_no_scores_reported(self, result):
        assert not result.functional_evolution.has_data
        assert IssueKind.INSUFFICIENT_DATA in _issue_kinds(result)

    def test_quality(self, result):
        assert result.quality["entity_count"] == 4
        assert result.quality["standalone_reference_count"] == 1
        assert result.quality["degraded"] is True

    def test_to_dict_keys(self, result):
        assert set(result.to_dict()) == {
            "entities", "timeline", "treatment_responses", "functional_evolution",
            "reference_dates", "issues", "quality",
        }


class TestDeduplicationAndLinking:
    """Tests for synonym merging and reference attachment across notes."""

    def test_coiling_variants_merge(self, pipeline):
        text = (
            "Coiling performed on 2024-03-02. "
            "Endovascular coiling of the aneurysm on 2024-03-02 was uncomplicated. "
            "Coil embolization completed 2024-03-02."
        )
        result = pipeline.run([text], pathology_hint="SAH")

        procedures = result.entities_of(EntityCategory.PROCEDURE)
        assert len(procedures) == 1
        assert procedures[0].canonical_name == "aneurysm coiling"
        assert len(procedures[0].source_mentions) == 3

    def test_reference_links_to_procedure(self, pipeline):
        result = pipeline.run(
            ["Coiling performed on 2024-03-02.", "Patient is s/p coiling, doing well."],
            pathology_hint="SAH",
        )

        procedures = result.entities_of(EntityCategory.PROCEDURE)
        assert len(procedures) == 1
        assert len(procedures[0].references) == 1
        assert IssueKind.NO_SIMILARITY_MATCH not in _issue_kinds(result)


class TestFunctionalEvolution:
    """Tests for functional scores flowing through the pipeline."""

    def test_kps_recovery(self, pipeline):
        notes = [
            "KPS 60 on 2024-03-01.",
            "KPS 55 on 2024-03-08.",
            "KPS 70 on 2024-03-15.",
            "KPS 85 on 2024-03-22.",
        ]
        evolution = pipeline.run(notes, pathology_hint="TUMORS").functional_evolution

        assert evolution.has_data
        assert evolution.trajectory.pattern.value == "IMPROVING"
        assert evolution.milestones["nadir"]["raw_value"] == 55.0

    def test_prognostic_expectation(self, pipeline):
        notes = ["KPS 60 on 2024-03-01.", "KPS 85 on 2024-03-22."]
        evolution = pipeline.run(notes, prognostic_expectation=70).functional_evolution
        assert evolution.prognostic_comparison["outperformed"] is True


class TestInputHandling:
    """Tests for malformed input and anchor dates."""

    def test_empty_notes(self, pipeline):
        result = pipeline.run([])
        assert IssueKind.MALFORMED_INPUT in _issue_kinds(result)
        assert result.all_entities() == []
        assert result.timeline.events == []

    def test_blank_note_reported(self, pipeline):
        result = pipeline.run(["Vasospasm on angiogram.", "   "])
        assert IssueKind.MALFORMED_INPUT in _issue_kinds(result)
        assert result.entities_of(EntityCategory.COMPLICATION)

    def test_single_string_is_one_note(self, pipeline):
        result = pipeline.run("Vasospasm on angiogram.")
        assert IssueKind.MALFORMED_INPUT not in _issue_kinds(result)
        assert len(result.entities_of(EntityCategory.COMPLICATION)) == 1

    def test_unknown_pathology(self, pipeline):
        result = pipeline.run(["Vasospasm on angiogram."], pathology_hint="BRAIN")
        assert IssueKind.MALFORMED_INPUT in _issue_kinds(result)
        assert result.treatment_responses.protocol_compliance is None
        assert result.entities_of(EntityCategory.COMPLICATION)

    def test_lowercase_pathology_accepted(self, pipeline):
        result = pipeline.run(["Vasospasm on angiogram."], pathology_hint="sah")
        assert IssueKind.MALFORMED_INPUT not in _issue_kinds(result)
        assert result.treatment_responses.protocol_compliance.pathology == PathologyType.SAH

    def test_caller_dates_win(self, pipeline):
        notes = ["Admitted on 2024-03-01. HD#2 vasospasm."]

        from_text = pipeline.run(notes)
        from_caller = pipeline.run(notes, reference_dates={"admission": "2024-03-05"})

        assert from_text.reference_dates.admission == date(2024, 3, 1)
        assert from_text.entities_of(EntityCategory.COMPLICATION)[0].date == date(2024, 3, 3)
        assert from_caller.reference_dates.admission == date(2024, 3, 5)
        assert from_caller.entities_of(EntityCategory.COMPLICATION)[0].date == date(2024, 3, 7)

    def test_unresolved_offset(self, pipeline):
        result = pipeline.run(["POD#3 hydrocephalus."])

        assert IssueKind.UNRESOLVED_TEMPORAL_REFERENCE in _issue_kinds(result)
        hydrocephalus = result.entities_of(EntityCategory.COMPLICATION)[0]
        assert hydrocephalus.date is None
        assert len(result.timeline.unresolved_event_ids) == 1

    def test_learned_patterns(self, pipeline):
        learned = [LearnedPattern(EntityCategory.COMPLICATION, r"\bcerebritis\b")]
        result = pipeline.run(["Cerebritis on MRI."], learned_patterns=learned)
        assert [e.canonical_name for e in result.entities_of(EntityCategory.COMPLICATION)] == ["cerebritis"]


class TestStageIsolation:
    """Tests for degraded output when a stage fails."""

    def test_stage_failure_recorded(self, pipeline, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("tracker unavailable")

        monkeypatch.setattr(pipeline.treatment_tracker, "track", boom)

        result = pipeline.run(SAH_NOTES, reference_dates={"first_procedure": "2024-03-02"})

        failures = [i for i in result.issues if i.kind == IssueKind.STAGE_FAILURE]
        assert len(failures) == 1
        assert failures[0].stage == "treatment_response"
        assert failures[0].message == "tracker unavailable"
        assert result.treatment_responses.responses == []
        assert result.timeline.events

    def test_prevents_through_pipeline(self, pipeline):
        result = pipeline.run(
            ["Started nimodipine on 2024-03-02.", "Neurologically stable on 2024-03-10."],
            pathology_hint="SAH",
        )
        prevents = _relationships(result, RelationshipType.PREVENTS)
        assert len(prevents) == 1
        assert result.timeline.get_event(prevents[0].to_event_id).is_synthetic


class TestUndatedAndSameDayEvents:
    """Tests for complications charted without a date or after their treatment."""

    def test_undated_vasospasm_defeats_prophylaxis(self, pipeline):
        result = pipeline.run(
            ["Started nimodipine on 2024-03-01.", "Patient developed vasospasm."],
            pathology_hint="SAH",
        )

        assert result.entities_of(EntityCategory.COMPLICATION)[0].date is None
        assert _relationships(result, RelationshipType.PREVENTS) == []
        nimodipine = result.treatment_responses.responses[0]
        assert nimodipine.intervention.name == "nimodipine"
        assert nimodipine.classification == ResponseClassification.WORSENED
        assert nimodipine.confidence == 0.6

    def test_treatment_charted_before_complication(self, pipeline):
        result = pipeline.run(
            ["POD#6 started induced hypertension for vasospasm."],
            reference_dates={"first_procedure": "2024-03-02"},
        )

        triggers = _relationships(result, RelationshipType.TRIGGERS)
        assert len(triggers) == 1
        assert result.timeline.get_event(triggers[0].from_event_id).description == "vasospasm"
        assert result.timeline.get_event(triggers[0].to_event_id).description == "induced hypertension"

    def test_repeated_same_day_reference_kept_once(self, pipeline):
        result = pipeline.run(
            ["POD#3 seizure noted overnight.", "POD#3 seizure again in the afternoon."],
            reference_dates={"first_procedure": "2024-03-02"},
        )

        seizures = result.entities_of(EntityCategory.COMPLICATION)
        assert len(seizures) == 1
        assert seizures[0].date == date(2024, 3, 5)
        assert len(seizures[0].source_mentions) == 2

    def test_brand_name_vasopressor(self, pipeline):
        result = pipeline.run(["Started levophed drip."])
        assert [e.canonical_name for e in result.entities_of(EntityCategory.MEDICATION)] == ["norepinephrine"]


class TestInvariants:
    """Structural guarantees of every run."""

    NOTES = [
        "Admitted on 2024-03-01 with SAH. GCS 13 on admission. Started nimodipine and levetiracetam.",
        "Underwent endovascular coiling on 2024-03-02. TCD ordered.",
        "POD#6 vasospasm, started induced hypertension. GCS 11.",
        "POD#8 vasospasm resolved. GCS 14. Patient is s/p coiling. Discharged on 2024-03-20.",
    ]

    @pytest.fixture
    def result(self, pipeline):
        return pipeline.run(self.NOTES, pathology_hint="SAH")

    def test_events_sorted(self, result):
        dated = [e.timestamp for e in result.timeline.events if e.timestamp is not None]
        assert dated == sorted(dated)

    def test_relationship_endpoints_exist(self, result):
        event_ids = {e.id for e in result.timeline.events}
        assert result.timeline.relationships
        for relationship in result.timeline.relationships:
            assert relationship.from_event_id in event_ids
            assert relationship.to_event_id in event_ids

    def test_scores_and_confidences_bounded(self, result):
        for pair in result.treatment_responses.responses:
            assert 0.0 <= pair.effectiveness.score <= 100.0
            assert 0.0 <= pair.confidence <= 1.0
        for entity in result.all_entities():
            assert 0.0 <= entity.confidence <= 1.0
        for sample in result.functional_evolution.score_timeline:
            assert 0.0 <= sample.normalized_value <= 100.0

    def test_anchor_dates_from_narrative(self, result):
        assert result.reference_dates.admission == date(2024, 3, 1)
        assert result.reference_dates.first_procedure == date(2024, 3, 2)
        assert result.reference_dates.discharge == date(2024, 3, 20)


class TestSingleton:
    """Test singleton accessors."""

    def test_reset_creates_new_instance(self):
        first = get_pipeline()
        assert get_pipeline() is first
        reset_pipeline()
        assert get_pipeline() is not first

    def test_default_pipeline_shares_service_singletons(self):
        pipeline = get_pipeline()
        assert pipeline.knowledge_base is get_knowledge_base()
        assert pipeline.extractor is get_entity_extractor()
        assert pipeline.deduplicator is get_deduplicator()
        assert pipeline.linker is get_reference_linker()
        assert pipeline.timeline_builder is get_timeline_builder()
        assert pipeline.treatment_tracker is get_treatment_tracker()
        assert pipeline.trajectory_analyzer is get_trajectory_analyzer()

    def test_custom_knowledge_base_builds_own_components(self, knowledge_base):
        pipeline = ClinicalTimelinePipeline(knowledge_base)
        assert pipeline.deduplicator is not get_deduplicator()
        assert pipeline.deduplicator.knowledge_base is knowledge_base
