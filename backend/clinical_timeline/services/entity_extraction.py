"""Pattern-based clinical entity extraction.

Scans note text with the category pattern libraries of the knowledge
base:

- Keyword patterns go through one Aho-Corasick automaton (O(n) in the
  text length regardless of library size), verified on word boundaries.
- Regex patterns (functional scores, learned patterns) run with ``re``.

Every candidate span is checked for negation and temporal context.
Confidently negated mentions are dropped; the rest become immutable
Mention objects tagged NEW_EVENT or REFERENCE.
"""

import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

import ahocorasick

from clinical_timeline.core.config import settings
from clinical_timeline.schemas.base import EntityCategory, MentionClassification, PathologyType
from clinical_timeline.services.knowledge_base import (
    ClinicalKnowledgeBase,
    PatternSpec,
    get_knowledge_base,
)
from clinical_timeline.services.negation import (
    NegationClassifier,
    NegationResult,
    get_negation_classifier,
)
from clinical_timeline.services.temporal_context import (
    ReferenceDates,
    TemporalContext,
    TemporalContextResolver,
    get_temporal_resolver,
)

if TYPE_CHECKING:
    from ahocorasick import Automaton

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================


@dataclass(frozen=True)
class Mention:
    """A single extracted clinical mention."""

    name: str
    category: EntityCategory
    raw_span: str
    confidence: float
    date: datetime.date | None = None
    start: int = 0
    end: int = 0
    note_index: int = 0
    temporal: TemporalContext | None = None
    negation: NegationResult | None = None
    context: str = ""
    value: float | None = None
    scale: str | None = None
    source: str = "library"  # "library" or "learned"

    @property
    def classification(self) -> MentionClassification:
        if self.temporal is None:
            return MentionClassification.NEW_EVENT
        return self.temporal.classification

    @property
    def is_reference(self) -> bool:
        return self.classification == MentionClassification.REFERENCE

    @property
    def position(self) -> tuple[int, int]:
        return (self.note_index, self.start)


@dataclass(frozen=True)
class LearnedPattern:
    """An externally learned (pattern, confidence) entry for one category."""

    category: EntityCategory
    pattern: str
    confidence: float = 0.7


@dataclass
class ExtractionConfig:
    """Configuration for entity extraction."""

    untargeted_multiplier: float = field(
        default_factory=lambda: settings.untargeted_confidence_multiplier
    )
    min_confidence: float = 0.0


@dataclass
class _Candidate:
    category: EntityCategory
    start: int
    end: int
    name: str
    confidence: float
    value: float | None = None
    scale: str | None = None
    source: str = "library"

    @property
    def length(self) -> int:
        return self.end - self.start


def format_score_name(label: str, value: float) -> str:
    """Render a functional score mention name, e.g. "mRS 3"."""
    if float(value).is_integer():
        return f"{label} {int(value)}"
    return f"{label} {value}"


# ============================================================================
# Extractor
# ============================================================================


class EntityExtractor:
    """Extracts clinical mentions from narrative text.

    The keyword automaton and compiled regexes are built once from the
    knowledge base; ``extract`` keeps no state between calls.
    """

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        negation_classifier: NegationClassifier | None = None,
        temporal_resolver: TemporalContextResolver | None = None,
        config: ExtractionConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.negation = negation_classifier or get_negation_classifier()
        self.temporal = temporal_resolver or get_temporal_resolver()
        self.config = config or ExtractionConfig()

        self._automaton: "Automaton | None" = None
        self._regex_patterns: list[tuple[PatternSpec, re.Pattern[str]]] = []
        self._build_patterns()

    def _build_patterns(self) -> None:
        """Build the keyword automaton and compile regex patterns."""
        keyword_specs: dict[str, list[PatternSpec]] = {}
        for spec in self.knowledge_base.patterns:
            if spec.is_regex:
                self._regex_patterns.append((spec, re.compile(spec.pattern, re.IGNORECASE)))
            else:
                key = spec.pattern.lower().strip()
                if key:
                    keyword_specs.setdefault(key, []).append(spec)

        if keyword_specs:
            self._automaton = ahocorasick.Automaton()
            for key, specs in keyword_specs.items():
                self._automaton.add_word(key, (key, tuple(specs)))
            self._automaton.make_automaton()

        logger.info(
            f"Entity extractor built: {len(keyword_specs)} keywords, "
            f"{len(self._regex_patterns)} regex patterns"
        )

    def _is_word_boundary(self, text: str, start: int, end: int) -> bool:
        """Check that a substring match sits on word boundaries."""
        if start > 0:
            prev_char = text[start - 1]
            if prev_char.isalnum() or prev_char == "_":
                return False
        if end < len(text):
            next_char = text[end]
            if next_char.isalnum() or next_char == "_":
                return False
        return True

    def _keyword_candidates(
        self, text: str, pathology: PathologyType | None, multiplier: float
    ) -> list[_Candidate]:
        if self._automaton is None:
            return []

        candidates: list[_Candidate] = []
        for end_index, (keyword, specs) in self._automaton.iter(text.lower()):
            start = end_index - len(keyword) + 1
            end = end_index + 1
            if not self._is_word_boundary(text, start, end):
                continue
            for spec in specs:
                if not spec.applies_to(pathology):
                    continue
                candidates.append(_Candidate(
                    category=spec.category,
                    start=start,
                    end=end,
                    name=spec.label or keyword,
                    confidence=spec.confidence * multiplier,
                ))
        return candidates

    def _regex_candidates(
        self,
        text: str,
        patterns: Iterable[tuple[PatternSpec, re.Pattern[str]]],
        pathology: PathologyType | None,
        multiplier: float,
        source: str = "library",
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for spec, compiled in patterns:
            if not spec.applies_to(pathology):
                continue
            for match in compiled.finditer(text):
                if match.end() <= match.start():
                    continue
                groups = match.groupdict()
                name = (groups.get("name") or spec.label or match.group()).strip()
                value = None
                if spec.scale is not None:
                    scale = self.knowledge_base.score_scales.get(spec.scale)
                    raw_value = groups.get("value")
                    if scale is None or raw_value is None:
                        continue
                    value = scale.parse_value(raw_value)
                    if value is None:
                        logger.debug(f"Out-of-range {spec.scale} value skipped: {raw_value!r}")
                        continue
                    name = format_score_name(spec.label or scale.key.upper(), value)
                candidates.append(_Candidate(
                    category=spec.category,
                    start=match.start(),
                    end=match.end(),
                    name=name.lower() if spec.scale is None else name,
                    confidence=spec.confidence * multiplier,
                    value=value,
                    scale=spec.scale,
                    source=source,
                ))
        return candidates

    def _compile_learned(
        self, learned_patterns: Iterable[LearnedPattern] | None
    ) -> list[tuple[PatternSpec, re.Pattern[str]]]:
        """Compile call-time learned patterns; invalid regexes are skipped."""
        compiled: list[tuple[PatternSpec, re.Pattern[str]]] = []
        for learned in learned_patterns or []:
            if not learned.pattern:
                continue
            try:
                pattern = re.compile(learned.pattern, re.IGNORECASE)
            except re.error as e:
                logger.warning(f"Skipping invalid learned pattern {learned.pattern!r}: {e}")
                continue
            spec = PatternSpec(
                category=learned.category,
                pattern=learned.pattern,
                is_regex=True,
                confidence=max(0.0, min(1.0, learned.confidence)),
            )
            compiled.append((spec, pattern))
        return compiled

    @staticmethod
    def _resolve_overlaps(candidates: list[_Candidate]) -> list[_Candidate]:
        """Keep the longest span among overlapping candidates of a category."""
        accepted: list[_Candidate] = []
        ordered = sorted(candidates, key=lambda c: (-c.length, c.start, -c.confidence))
        for candidate in ordered:
            overlaps = any(
                other.category == candidate.category
                and candidate.start < other.end
                and other.start < candidate.end
                for other in accepted
            )
            if not overlaps:
                accepted.append(candidate)
        return sorted(accepted, key=lambda c: (c.start, c.end))

    def extract(
        self,
        text: str,
        pathology_hint: PathologyType | None = None,
        reference_dates: ReferenceDates | None = None,
        learned_patterns: Iterable[LearnedPattern] | None = None,
        note_index: int = 0,
    ) -> list[Mention]:
        """Extract mentions from one note.

        Args:
            text: Clinical note text.
            pathology_hint: Upstream pathology classification, if any.
            reference_dates: Anchor dates for POD/HD resolution.
            learned_patterns: Extra patterns merged for this call only.
            note_index: Position of the note in the input sequence.

        Returns:
            Mentions in text order. Empty for empty or non-text input.
        """
        if not isinstance(text, str) or not text.strip():
            logger.debug("Empty or non-text input; no mentions extracted")
            return []

        multiplier = 1.0 if pathology_hint is not None else self.config.untargeted_multiplier

        candidates = self._keyword_candidates(text, pathology_hint, multiplier)
        candidates.extend(
            self._regex_candidates(text, self._regex_patterns, pathology_hint, multiplier)
        )
        learned = self._compile_learned(learned_patterns)
        if learned:
            candidates.extend(
                self._regex_candidates(text, learned, None, multiplier, source="learned")
            )

        mentions: list[Mention] = []
        for candidate in self._resolve_overlaps(candidates):
            negation = self.negation.classify(text, candidate.start, candidate.end)
            if self.negation.should_drop(negation):
                logger.debug(
                    f"Dropped negated mention '{candidate.name}' (trigger: {negation.trigger})"
                )
                continue

            temporal = self.temporal.resolve(text, candidate.start, candidate.end, reference_dates)

            confidence = self.negation.apply_penalty(candidate.confidence, negation)
            if temporal.unresolved_offset:
                confidence *= self.temporal.config.unresolved_penalty
            confidence = max(0.0, min(1.0, confidence))
            if confidence < self.config.min_confidence:
                continue

            mentions.append(Mention(
                name=candidate.name,
                category=candidate.category,
                raw_span=text[candidate.start:candidate.end],
                confidence=confidence,
                date=temporal.resolved_date,
                start=candidate.start,
                end=candidate.end,
                note_index=note_index,
                temporal=temporal,
                negation=negation,
                context=self.temporal.sentence_context(text, candidate.start, candidate.end),
                value=candidate.value,
                scale=candidate.scale,
                source=candidate.source,
            ))

        logger.debug(f"Extracted {len(mentions)} mentions from note {note_index}")
        return mentions

    def extract_notes(
        self,
        notes: Iterable[str],
        pathology_hint: PathologyType | None = None,
        reference_dates: ReferenceDates | None = None,
        learned_patterns: Iterable[LearnedPattern] | None = None,
    ) -> list[Mention]:
        """Extract mentions from a sequence of notes, in note order."""
        learned = list(learned_patterns or [])
        mentions: list[Mention] = []
        for index, note in enumerate(notes):
            mentions.extend(self.extract(note, pathology_hint, reference_dates, learned, index))
        return mentions

    def get_stats(self) -> dict[str, int]:
        return {
            "keyword_count": len(self._automaton) if self._automaton is not None else 0,
            "regex_count": len(self._regex_patterns),
        }


# Singleton instance
_entity_extractor: EntityExtractor | None = None


def get_entity_extractor() -> EntityExtractor:
    """Get the singleton entity extractor."""
    global _entity_extractor
    if _entity_extractor is None:
        _entity_extractor = EntityExtractor()
    return _entity_extractor


def reset_entity_extractor() -> None:
    """Reset the singleton entity extractor (mainly for testing)."""
    global _entity_extractor
    _entity_extractor = None
