"""Tests for the shared clinical similarity function."""

import pytest

from clinical_timeline.schemas.base import EntityCategory
from clinical_timeline.services.similarity import (
    canonical_term,
    clinical_similarity,
    edit_similarity,
    jaccard_similarity,
    lexical_similarity,
    matches_term,
    normalize_term,
)


@pytest.fixture
def procedure_synonyms(knowledge_base):
    return knowledge_base.synonym_groups(EntityCategory.PROCEDURE)


class TestNormalization:
    """Tests for term normalization."""

    def test_lowercases_and_collapses_punctuation(self):
        assert normalize_term("  Coil-Embolization, (left) ") == "coil embolization left"

    def test_keeps_slash(self):
        assert normalize_term("S/P coiling") == "s/p coiling"

    def test_none(self):
        assert normalize_term(None) == ""


class TestLexicalSimilarity:
    """Tests for token and edit similarity."""

    def test_jaccard(self):
        assert jaccard_similarity("aneurysm coiling", "coiling") == pytest.approx(0.5)

    def test_edit_identical(self):
        assert edit_similarity("vasospasm", "Vasospasm") == 1.0

    def test_lexical_weights(self):
        a, b = "aneurysm coiling", "coiling"
        expected = 0.6 * jaccard_similarity(a, b) + 0.4 * edit_similarity(a, b)
        assert lexical_similarity(a, b) == pytest.approx(expected)


class TestCanonicalTerm:
    """Tests for synonym resolution."""

    def test_exact_synonym(self, procedure_synonyms):
        assert canonical_term("coil embolization", procedure_synonyms) == "aneurysm coiling"

    def test_contained_synonym(self, procedure_synonyms):
        assert canonical_term("left endovascular coiling", procedure_synonyms) == "aneurysm coiling"

    def test_unknown_term(self, procedure_synonyms):
        assert canonical_term("tracheostomy", procedure_synonyms) is None

    def test_no_synonyms(self):
        assert canonical_term("coiling", None) is None


class TestClinicalSimilarity:
    """Tests for the combined [0, 1] score."""

    def test_identical_terms(self):
        assert clinical_similarity("Vasospasm", "vasospasm") == 1.0

    @pytest.mark.parametrize("a,b", [(None, "coiling"), ("coiling", ""), ("  ", None)])
    def test_missing_terms_score_zero(self, a, b):
        assert clinical_similarity(a, b) == 0.0

    def test_synonyms_score_high(self, procedure_synonyms):
        score = clinical_similarity("coiling", "coil embolization", procedure_synonyms)
        assert score >= 0.8

    def test_different_canonicals_score_low(self, procedure_synonyms):
        score = clinical_similarity("coiling", "clipping", procedure_synonyms)
        assert score < 0.2

    def test_without_synonyms_is_lexical(self):
        assert clinical_similarity("coiling", "clipping") == pytest.approx(
            lexical_similarity("coiling", "clipping")
        )

    def test_contained_synonym_scores_high(self, procedure_synonyms):
        assert clinical_similarity("endovascular coiling", "aneurysm coiling", procedure_synonyms) >= 0.8

    def test_bounded(self, procedure_synonyms):
        for a, b in [("coiling", "coiling left"), ("evd", "external ventricular drain")]:
            assert 0.0 <= clinical_similarity(a, b, procedure_synonyms) <= 1.0


class TestMatchesTerm:
    """Tests for concept matching."""

    def test_brand_name_matches_generic(self, knowledge_base):
        synonyms = knowledge_base.synonym_groups(EntityCategory.MEDICATION)
        assert matches_term("Keppra", "levetiracetam", synonyms)

    def test_unrelated(self, knowledge_base):
        synonyms = knowledge_base.synonym_groups(EntityCategory.MEDICATION)
        assert not matches_term("nimodipine", "levetiracetam", synonyms)
