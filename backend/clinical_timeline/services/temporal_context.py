"""Temporal context resolution for clinical mentions.

Decides whether a mention describes a NEW event or points back to an
earlier one (REFERENCE), extracts POD/HD day offsets and resolves them
to absolute dates against the reference-date map:

    POD#N -> first procedure date + N days
    HD#N  -> admission date + N days

An offset without a matching reference date stays unresolved; the date
is never inferred from other anchors.
"""

import logging
import re
from dataclasses import dataclass, field, fields
from datetime import date, timedelta
from typing import Any

from dateutil.parser import ParserError, parse as parse_date

from clinical_timeline.schemas.base import MentionClassification, OffsetUnit

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================


@dataclass(frozen=True)
class RelativeOffset:
    """A relative day offset such as POD#3 or HD#5."""

    unit: OffsetUnit
    value: int

    @property
    def label(self) -> str:
        return f"{self.unit.value}#{self.value}"


@dataclass(frozen=True)
class ReferenceDates:
    """Absolute anchor dates used to resolve relative offsets."""

    ictus: date | None = None
    admission: date | None = None
    first_procedure: date | None = None
    discharge: date | None = None

    def for_unit(self, unit: OffsetUnit) -> date | None:
        """Get the reference date an offset unit resolves against."""
        if unit == OffsetUnit.POD:
            return self.first_procedure
        return self.admission

    def merged_with(self, fallback: "ReferenceDates") -> "ReferenceDates":
        """Fill missing dates from ``fallback``; present dates always win."""
        return ReferenceDates(**{
            f.name: getattr(self, f.name) or getattr(fallback, f.name)
            for f in fields(self)
        })

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_dict(self) -> dict[str, str | None]:
        result: dict[str, str | None] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = value.isoformat() if value else None
        return result


@dataclass(frozen=True)
class TemporalContext:
    """Temporal classification attached to a mention at extraction time."""

    classification: MentionClassification
    confidence: float
    relative_offset: RelativeOffset | None = None
    resolved_date: date | None = None
    cue: str | None = None
    unresolved_offset: bool = False

    @property
    def is_reference(self) -> bool:
        return self.classification == MentionClassification.REFERENCE


@dataclass
class TemporalConfig:
    """Configuration for temporal context resolution."""

    context_chars: int = 100
    unresolved_penalty: float = 0.8
    default_confidence: float = 0.5


# ============================================================================
# Patterns
# ============================================================================

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"

DATE_PATTERN = (
    r"(?:\d{4}-\d{1,2}-\d{1,2}"
    r"|\d{1,2}/\d{1,2}/\d{2,4}"
    rf"|{_MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|\d{{1,2}}\s+{_MONTHS}\s+\d{{4}})"
)

_DATE_RE = re.compile(DATE_PATTERN, re.IGNORECASE)

_OFFSET_RE = re.compile(
    r"\b(?:(?P<unit>POD|HD)\s*#?\s*"
    r"|(?P<long>post-?\s?operative|hospital)\s+day\s*#?\s*)"
    r"(?P<value>\d{1,3})\b",
    re.IGNORECASE,
)

_SENTENCE_BOUNDARY = re.compile(r"[.!?;](?!\d)|\n")

# "s/p coiling": a reference marker directly in front of the mention
_DIRECT_REFERENCE_RE = re.compile(
    r"(?:\bs/p|\bstatus\s+post|\bh/o|\bhistory\s+of|\bprior|\bprevious)\s*$",
    re.IGNORECASE,
)

_REFERENCE_DATE_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "admission": [
        re.compile(rf"\badmitted(?:\s+\w+){{0,3}}?\s+on\s+(?P<date>{DATE_PATTERN})", re.IGNORECASE),
        re.compile(rf"\b(?:date\s+of\s+admission|admission\s+date|admit\s+date)\s*:?\s*(?P<date>{DATE_PATTERN})", re.IGNORECASE),
    ],
    "discharge": [
        re.compile(rf"\bdischarged(?:\s+\w+){{0,3}}?\s+on\s+(?P<date>{DATE_PATTERN})", re.IGNORECASE),
        re.compile(rf"\b(?:date\s+of\s+discharge|discharge\s+date)\s*:?\s*(?P<date>{DATE_PATTERN})", re.IGNORECASE),
    ],
    "ictus": [
        re.compile(rf"\b(?:ictus|date\s+of\s+(?:ictus|injury|onset))\s*(?:on|:)?\s*(?P<date>{DATE_PATTERN})", re.IGNORECASE),
        re.compile(rf"\b(?:ruptured|injured|fell)\s+on\s+(?P<date>{DATE_PATTERN})", re.IGNORECASE),
    ],
    "first_procedure": [
        re.compile(rf"\bunderwent\s+[^.;\n]{{0,60}}?\bon\s+(?P<date>{DATE_PATTERN})", re.IGNORECASE),
        re.compile(rf"\b(?:surgery|procedure)\s+on\s+(?P<date>{DATE_PATTERN})", re.IGNORECASE),
        re.compile(rf"\b(?:date\s+of\s+(?:surgery|procedure)|surgery\s+date)\s*:?\s*(?P<date>{DATE_PATTERN})", re.IGNORECASE),
    ],
}


def parse_clinical_date(value: str) -> date | None:
    """Parse an absolute date string; return None when it is not a date."""
    try:
        return parse_date(value, fuzzy=False).date()
    except (ParserError, ValueError, OverflowError):
        logger.debug(f"Could not parse date: {value!r}")
        return None


def extract_reference_dates(text: str) -> ReferenceDates:
    """Extract ictus/admission/procedure/discharge dates from narrative text.

    The first phrase found per anchor wins, except the first procedure,
    which takes the earliest procedure date mentioned.
    """
    if not isinstance(text, str) or not text.strip():
        return ReferenceDates()

    found: dict[str, Any] = {}
    for key, patterns in _REFERENCE_DATE_PATTERNS.items():
        candidates: list[tuple[int, date]] = []
        for pattern in patterns:
            for match in pattern.finditer(text):
                parsed = parse_clinical_date(match.group("date"))
                if parsed is not None:
                    candidates.append((match.start(), parsed))
        if not candidates:
            continue
        if key == "first_procedure":
            found[key] = min(d for _, d in candidates)
        else:
            found[key] = min(candidates)[1]

    if found:
        logger.debug(f"Extracted reference dates: {found}")
    return ReferenceDates(**found)


# ============================================================================
# Resolver
# ============================================================================


class TemporalContextResolver:
    """Classifies mentions as new events or references and resolves dates."""

    # (pattern, confidence); checked before reference cues
    NEW_EVENT_CUES = [
        (r"\bunderwent\b", 0.9),
        (r"\btaken\s+to\b", 0.9),
        (r"\bbrought\s+to\b", 0.9),
        (r"\bperformed\b", 0.9),
        (r"\bcompleted\b", 0.9),
        (r"\bstarted\b", 0.9),
        (r"\binitiated\b", 0.9),
        (r"\btoday\b", 0.9),
        (r"\bthis\s+morning\b", 0.9),
    ]

    REFERENCE_CUES = [
        (r"\bs/p\b", 0.95),
        (r"\bstatus\s+post\b", 0.95),
        (r"\bPOD\s*#?\s*\d+", 0.9),
        (r"\bHD\s*#?\s*\d+", 0.9),
        (r"\bpost-?\s?operative\s+day\b", 0.9),
        (r"\bhospital\s+day\b", 0.9),
        (r"\bpost-?\s?operative(?:ly)?\b", 0.8),
        (r"\bprior\b", 0.8),
        (r"\bprevious(?:ly)?\b", 0.8),
        (r"\bhistory\s+of\b", 0.8),
        (r"\bh/o\b", 0.8),
    ]

    def __init__(self, config: TemporalConfig | None = None):
        self.config = config or TemporalConfig()
        self._new_event_cues = [(re.compile(p, re.IGNORECASE), c) for p, c in self.NEW_EVENT_CUES]
        self._reference_cues = [(re.compile(p, re.IGNORECASE), c) for p, c in self.REFERENCE_CUES]

    def sentence_bounds(self, text: str, start: int, end: int) -> tuple[int, int]:
        """Get the mention's sentence clipped to the cue window."""
        lo = max(0, start - self.config.context_chars)
        hi = min(len(text), end + self.config.context_chars)
        boundaries = list(_SENTENCE_BOUNDARY.finditer(text, lo, start))
        if boundaries:
            lo = boundaries[-1].end()
        boundary = _SENTENCE_BOUNDARY.search(text, end, hi)
        if boundary:
            hi = boundary.start()
        return lo, hi

    def sentence_context(self, text: str, start: int, end: int) -> str:
        lo, hi = self.sentence_bounds(text, start, end)
        return text[lo:hi].strip()

    def _extract_offset(self, text: str, lo: int, hi: int, start: int) -> RelativeOffset | None:
        """Pick the nearest POD/HD offset before the mention, else after it."""
        matches = list(_OFFSET_RE.finditer(text, lo, hi))
        if not matches:
            return None
        preceding = [m for m in matches if m.start() < start]
        match = preceding[-1] if preceding else matches[0]
        if match.group("unit"):
            unit = OffsetUnit(match.group("unit").upper())
        else:
            unit = OffsetUnit.HD if match.group("long").lower() == "hospital" else OffsetUnit.POD
        return RelativeOffset(unit=unit, value=int(match.group("value")))

    def _classify(self, text: str, lo: int, hi: int, start: int) -> tuple[MentionClassification, float, str | None]:
        prefix = text[max(lo, start - 20):start]
        direct = _DIRECT_REFERENCE_RE.search(prefix)
        if direct:
            return MentionClassification.REFERENCE, 0.95, direct.group().strip().lower()

        context = text[lo:hi]
        for pattern, confidence in self._new_event_cues:
            match = pattern.search(context)
            if match:
                return MentionClassification.NEW_EVENT, confidence, match.group().lower()

        for pattern, confidence in self._reference_cues:
            match = pattern.search(context)
            if match:
                return MentionClassification.REFERENCE, confidence, match.group().lower()

        return MentionClassification.NEW_EVENT, self.config.default_confidence, None

    def resolve(
        self,
        text: str,
        start: int,
        end: int,
        reference_dates: ReferenceDates | None = None,
    ) -> TemporalContext:
        """Resolve the temporal context of the mention at ``text[start:end]``.

        Args:
            text: Full source text.
            start: Mention start offset.
            end: Mention end offset (exclusive).
            reference_dates: Anchor dates for offset resolution.

        Returns:
            TemporalContext with classification, offset and resolved date.
        """
        reference_dates = reference_dates or ReferenceDates()
        lo, hi = self.sentence_bounds(text, start, end)

        classification, confidence, cue = self._classify(text, lo, hi, start)
        offset = self._extract_offset(text, lo, hi, start)

        resolved: date | None = None
        unresolved_offset = False
        if offset is not None:
            anchor = reference_dates.for_unit(offset.unit)
            if anchor is not None:
                resolved = anchor + timedelta(days=offset.value)
            else:
                unresolved_offset = True
                confidence *= self.config.unresolved_penalty
                logger.debug(f"No reference date for {offset.label}; date left unresolved")
        else:
            date_match = _DATE_RE.search(text, lo, hi)
            if date_match:
                resolved = parse_clinical_date(date_match.group())

        return TemporalContext(
            classification=classification,
            confidence=max(0.0, min(1.0, confidence)),
            relative_offset=offset,
            resolved_date=resolved,
            cue=cue,
            unresolved_offset=unresolved_offset,
        )


# Singleton instance
_temporal_resolver: TemporalContextResolver | None = None


def get_temporal_resolver() -> TemporalContextResolver:
    """Get the singleton temporal context resolver."""
    global _temporal_resolver
    if _temporal_resolver is None:
        _temporal_resolver = TemporalContextResolver()
    return _temporal_resolver


def reset_temporal_resolver() -> None:
    """Reset the singleton temporal context resolver (mainly for testing)."""
    global _temporal_resolver
    _temporal_resolver = None
