"""Clinical term similarity shared by deduplication and reference linking.

A single pure function scores two terms in [0, 1]:

    lexical = 0.6 * token Jaccard + 0.4 * edit similarity
    score   = 0.8 * synonym agreement + 0.2 * lexical   (both terms canonicalize)
            = lexical                                    (otherwise)

Synonym groups are passed in per call, so the function carries no
configuration of its own.
"""

import re
from difflib import SequenceMatcher
from typing import Callable, Mapping

SynonymGroups = Mapping[str, tuple[str, ...]]
SimilarityFunction = Callable[[str | None, str | None, SynonymGroups | None], float]

JACCARD_WEIGHT = 0.6
EDIT_WEIGHT = 0.4
SYNONYM_WEIGHT = 0.8


def normalize_term(text: str | None) -> str:
    """Normalize a term for comparison.

    Lowercases, keeps "/" (as in "s/p") and collapses other punctuation.
    """
    if not text:
        return ""
    normalized = re.sub(r"[^a-z0-9/+\s-]", " ", text.lower())
    normalized = normalized.replace("-", " ")
    return " ".join(normalized.split())


def tokenize(text: str | None) -> set[str]:
    return set(normalize_term(text).split())


def jaccard_similarity(a: str | None, b: str | None) -> float:
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def edit_similarity(a: str | None, b: str | None) -> float:
    norm_a = normalize_term(a)
    norm_b = normalize_term(b)
    if not norm_a or not norm_b:
        return 0.0
    return SequenceMatcher(None, norm_a, norm_b).ratio()


def lexical_similarity(a: str | None, b: str | None) -> float:
    return JACCARD_WEIGHT * jaccard_similarity(a, b) + EDIT_WEIGHT * edit_similarity(a, b)


def canonical_term(term: str | None, synonyms: SynonymGroups | None) -> str | None:
    """Resolve a term to its preferred name through the synonym groups.

    Exact matches win; otherwise the longest synonym contained in the
    term as whole words decides ("endovascular coiling" -> "coiling").
    """
    normalized = normalize_term(term)
    if not normalized or not synonyms:
        return None

    best: tuple[int, str] | None = None
    for canonical, group in synonyms.items():
        for synonym in (canonical, *group):
            norm_synonym = normalize_term(synonym)
            if not norm_synonym:
                continue
            if norm_synonym == normalized:
                return canonical
            if re.search(rf"(?<![\w/]){re.escape(norm_synonym)}(?![\w/])", normalized):
                if best is None or len(norm_synonym) > best[0]:
                    best = (len(norm_synonym), canonical)
    return best[1] if best else None


def clinical_similarity(
    a: str | None,
    b: str | None,
    synonyms: SynonymGroups | None = None,
) -> float:
    """Score two clinical terms in [0, 1].

    Missing or blank terms score 0; identical normalized terms score 1.
    """
    norm_a = normalize_term(a)
    norm_b = normalize_term(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0

    lexical = lexical_similarity(norm_a, norm_b)
    canonical_a = canonical_term(norm_a, synonyms)
    canonical_b = canonical_term(norm_b, synonyms)
    if canonical_a is not None and canonical_b is not None:
        agreement = 1.0 if canonical_a == canonical_b else 0.0
        score = SYNONYM_WEIGHT * agreement + (1 - SYNONYM_WEIGHT) * lexical
    else:
        score = lexical
    return max(0.0, min(1.0, score))


def matches_term(term: str | None, target: str | None, synonyms: SynonymGroups | None = None) -> bool:
    """Check whether two terms name the same concept (same canonical or text)."""
    norm_term = normalize_term(term)
    norm_target = normalize_term(target)
    if not norm_term or not norm_target:
        return False
    if norm_term == norm_target:
        return True
    canonical = canonical_term(norm_term, synonyms)
    return canonical is not None and canonical == canonical_term(norm_target, synonyms)
