"""Tests for the NegEx-style negation classifier."""

import pytest

from clinical_timeline.services.negation import (
    NegationClassifier,
    NegationConfig,
    NegationResult,
    get_negation_classifier,
    reset_negation_classifier,
)


def _classify(classifier: NegationClassifier, text: str, term: str) -> NegationResult:
    start = text.lower().index(term.lower())
    return classifier.classify(text, start, start + len(term))


class TestNegationConfig:
    """Test configuration defaults."""

    def test_default_config(self):
        """Test default configuration values."""
        config = NegationConfig()
        assert config.window_tokens == 6
        assert config.threshold == 0.7
        assert config.penalty == 0.5


class TestPreNegation:
    """Tests for triggers that precede the mention."""

    @pytest.fixture
    def classifier(self) -> NegationClassifier:
        return NegationClassifier()

    def test_no_negates_following_term(self, classifier):
        """Test "no vasospasm noted" negates vasospasm."""
        result = _classify(classifier, "No vasospasm noted on TCD.", "vasospasm")
        assert result.is_negated
        assert result.trigger == "no"
        assert result.position == "pre"
        assert result.confidence == 0.95

    def test_denies(self, classifier):
        result = _classify(classifier, "Patient denies seizure activity.", "seizure")
        assert result.is_negated
        assert result.trigger == "denies"

    def test_extended_trigger(self, classifier):
        result = _classify(classifier, "There is no evidence of hydrocephalus.", "hydrocephalus")
        assert result.is_negated

    def test_scope_terminator_blocks_negation(self, classifier):
        """Test that "but" ends the scope of a preceding trigger."""
        result = _classify(classifier, "No fever but vasospasm on day 6.", "vasospasm")
        assert not result.is_negated

    def test_sentence_boundary_blocks_negation(self, classifier):
        result = _classify(classifier, "No fever. Vasospasm seen on angiogram.", "vasospasm")
        assert not result.is_negated

    def test_trigger_outside_token_window(self, classifier):
        """Test triggers beyond the six-token window are ignored."""
        text = "No headache reported by the patient overnight and then vasospasm developed."
        result = _classify(classifier, text, "vasospasm")
        assert not result.is_negated

    def test_s_slash_p_is_not_negation(self, classifier):
        result = _classify(classifier, "Patient s/p coiling.", "coiling")
        assert not result.is_negated


class TestPostNegation:
    """Tests for triggers that follow the mention."""

    @pytest.fixture
    def classifier(self) -> NegationClassifier:
        return NegationClassifier()

    def test_ruled_out(self, classifier):
        result = _classify(classifier, "Rebleeding was ruled out on CT.", "rebleeding")
        assert result.is_negated
        assert result.position == "post"
        assert result.confidence == 0.85

    def test_not_seen(self, classifier):
        result = _classify(classifier, "Hydrocephalus not seen on follow-up imaging.", "hydrocephalus")
        assert result.is_negated


class TestPseudoNegation:
    """Tests for phrases that look like negation but are not."""

    @pytest.fixture
    def classifier(self) -> NegationClassifier:
        return NegationClassifier()

    def test_no_further_is_not_negation(self, classifier):
        """Test "no further seizures" is not negated."""
        result = _classify(classifier, "No further seizures overnight.", "seizures")
        assert not result.is_negated
        assert result.position == "pseudo"

    def test_no_change(self, classifier):
        result = _classify(classifier, "No change in hydrocephalus.", "hydrocephalus")
        assert not result.is_negated


class TestDecisions:
    """Tests for drop and penalty decisions."""

    @pytest.fixture
    def classifier(self) -> NegationClassifier:
        return NegationClassifier()

    def test_confident_negation_is_dropped(self, classifier):
        assert classifier.should_drop(NegationResult(True, 0.95, "no", "pre"))

    def test_weak_negation_is_penalized_not_dropped(self, classifier):
        weak = NegationResult(True, 0.6, "unlikely", "post")
        assert not classifier.should_drop(weak)
        assert classifier.apply_penalty(0.8, weak) == pytest.approx(0.4)

    def test_non_negated_confidence_unchanged(self, classifier):
        result = NegationResult(False, 0.0)
        assert not classifier.should_drop(result)
        assert classifier.apply_penalty(0.8, result) == 0.8

    def test_invalid_span(self, classifier):
        result = classifier.classify("No vasospasm.", 5, 5)
        assert not result.is_negated


class TestSingleton:
    """Test singleton accessors."""

    def test_get_returns_same_instance(self):
        assert get_negation_classifier() is get_negation_classifier()

    def test_reset_creates_new_instance(self):
        first = get_negation_classifier()
        reset_negation_classifier()
        assert get_negation_classifier() is not first
