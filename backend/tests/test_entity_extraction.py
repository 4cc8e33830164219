"""Tests for pattern-based entity extraction."""

from datetime import date

import pytest

from clinical_timeline.schemas.base import EntityCategory, MentionClassification, PathologyType
from clinical_timeline.services.entity_extraction import (
    EntityExtractor,
    ExtractionConfig,
    LearnedPattern,
    format_score_name,
    get_entity_extractor,
    reset_entity_extractor,
)


@pytest.fixture
def extractor(knowledge_base) -> EntityExtractor:
    """Extractor built from the default knowledge base."""
    return EntityExtractor(knowledge_base)


def _of(mentions, category):
    return [m for m in mentions if m.category == category]


class TestExtractionConfig:
    """Test configuration defaults."""

    def test_default_config(self):
        config = ExtractionConfig()
        assert config.untargeted_multiplier == 0.85
        assert config.min_confidence == 0.0


class TestKeywordExtraction:
    """Tests for keyword library matching."""

    def test_extract_procedure(self, extractor):
        """Test extracting a procedure with a pathology hint."""
        mentions = extractor.extract("She underwent coiling of the aneurysm.", PathologyType.SAH)

        procedures = _of(mentions, EntityCategory.PROCEDURE)
        assert len(procedures) == 1
        assert procedures[0].name == "coiling"
        assert procedures[0].raw_span == "coiling"
        assert procedures[0].classification == MentionClassification.NEW_EVENT
        assert procedures[0].confidence == pytest.approx(0.9)

    def test_untargeted_scan_lowers_confidence(self, extractor):
        mentions = extractor.extract("She underwent coiling of the aneurysm.")
        assert _of(mentions, EntityCategory.PROCEDURE)[0].confidence == pytest.approx(0.9 * 0.85)

    def test_pathology_hint_targets_libraries(self, extractor):
        """Test SAH-only procedures are not scanned for a tumor hint."""
        mentions = extractor.extract("She underwent coiling of the aneurysm.", PathologyType.TUMORS)
        assert _of(mentions, EntityCategory.PROCEDURE) == []

    def test_offsets(self, extractor):
        text = "Started nimodipine today."
        mention = extractor.extract(text)[0]
        assert text[mention.start:mention.end] == "nimodipine"

    def test_word_boundary(self, extractor):
        """Test that "ct" inside "octreotide" is not an imaging mention."""
        assert extractor.extract("Octreotide given.") == []

    def test_longest_span_wins(self, extractor):
        mentions = extractor.extract("Endovascular coiling performed.")
        procedures = _of(mentions, EntityCategory.PROCEDURE)
        assert [m.name for m in procedures] == ["endovascular coiling"]

    def test_case_insensitive(self, extractor):
        mentions = extractor.extract("KEPPRA started for seizure prophylaxis.")
        assert "keppra" in [m.name for m in _of(mentions, EntityCategory.MEDICATION)]


class TestNegationHandling:
    """Tests for negated mentions."""

    def test_negated_mention_dropped(self, extractor):
        mentions = extractor.extract("No vasospasm noted.")
        assert _of(mentions, EntityCategory.COMPLICATION) == []

    def test_pseudo_negation_kept(self, extractor):
        mentions = extractor.extract("No further seizures overnight.")
        assert [m.name for m in _of(mentions, EntityCategory.COMPLICATION)] == ["seizures"]


class TestFunctionalScores:
    """Tests for functional score regexes."""

    def test_score_value_and_scale(self, extractor):
        mentions = extractor.extract("mRS 3 at discharge.")
        scores = _of(mentions, EntityCategory.FUNCTIONAL_SCORE)
        assert len(scores) == 1
        assert scores[0].name == "mRS 3"
        assert scores[0].value == 3.0
        assert scores[0].scale == "mrs"

    def test_out_of_range_score_skipped(self, extractor):
        mentions = extractor.extract("KPS 150 recorded.")
        assert _of(mentions, EntityCategory.FUNCTIONAL_SCORE) == []

    def test_karnofsky_long_form(self, extractor):
        mentions = extractor.extract("Karnofsky performance status of 70.")
        scores = _of(mentions, EntityCategory.FUNCTIONAL_SCORE)
        assert scores[0].value == 70.0
        assert scores[0].scale == "kps"

    def test_format_score_name(self):
        assert format_score_name("KPS", 70.0) == "KPS 70"
        assert format_score_name("GCS", 13.5) == "GCS 13.5"


class TestTemporalContext:
    """Tests for temporal context attached to mentions."""

    def test_reference_mention(self, extractor):
        mention = extractor.extract("Patient is s/p coiling.")[0]
        assert mention.is_reference

    def test_pod_date_resolved(self, extractor, reference_dates):
        mention = extractor.extract("POD#3 hydrocephalus.", reference_dates=reference_dates)[0]
        assert mention.date == date(2024, 3, 5)
        assert mention.temporal.relative_offset.label == "POD#3"

    def test_unresolved_offset_penalized(self, extractor):
        mention = extractor.extract("POD#3 hydrocephalus.")[0]
        assert mention.date is None
        assert mention.temporal.unresolved_offset
        assert mention.confidence == pytest.approx(0.85 * 0.85 * 0.8)

    def test_context_is_sentence(self, extractor):
        text = "Admitted with headache. Vasospasm on POD#6. Discharged home."
        mention = _of(extractor.extract(text), EntityCategory.COMPLICATION)[0]
        assert mention.context == "Vasospasm on POD#6"


class TestLearnedPatterns:
    """Tests for call-time learned patterns."""

    def test_learned_pattern_extracts(self, extractor):
        learned = [LearnedPattern(EntityCategory.COMPLICATION, r"\bcerebritis\b", 0.75)]
        mentions = extractor.extract("Cerebritis on MRI.", learned_patterns=learned)

        complications = _of(mentions, EntityCategory.COMPLICATION)
        assert len(complications) == 1
        assert complications[0].name == "cerebritis"
        assert complications[0].source == "learned"
        assert complications[0].confidence == pytest.approx(0.75 * 0.85)

    def test_learned_pattern_not_retained(self, extractor):
        learned = [LearnedPattern(EntityCategory.COMPLICATION, r"\bcerebritis\b")]
        extractor.extract("Cerebritis on MRI.", learned_patterns=learned)

        mentions = extractor.extract("Cerebritis on MRI.")
        assert _of(mentions, EntityCategory.COMPLICATION) == []

    def test_invalid_learned_pattern_skipped(self, extractor):
        learned = [LearnedPattern(EntityCategory.COMPLICATION, "([")]
        mentions = extractor.extract("Vasospasm on angiogram.", learned_patterns=learned)
        assert [m.name for m in _of(mentions, EntityCategory.COMPLICATION)] == ["vasospasm"]


class TestEdgeCases:
    """Tests for malformed input."""

    @pytest.mark.parametrize("text", ["", "   ", None, 42])
    def test_empty_or_non_text(self, extractor, text):
        assert extractor.extract(text) == []

    def test_extract_notes_sets_note_index(self, extractor):
        mentions = extractor.extract_notes(["Vasospasm on angiogram.", "Seizure overnight."])
        assert [(m.name, m.note_index) for m in mentions] == [("vasospasm", 0), ("seizure", 1)]

    def test_get_stats(self, extractor):
        stats = extractor.get_stats()
        assert stats["keyword_count"] > 100
        assert stats["regex_count"] == 6


class TestSingleton:
    """Test singleton accessors."""

    def test_get_returns_same_instance(self):
        assert get_entity_extractor() is get_entity_extractor()

    def test_reset_creates_new_instance(self):
        first = get_entity_extractor()
        reset_entity_extractor()
        assert get_entity_extractor() is not first
