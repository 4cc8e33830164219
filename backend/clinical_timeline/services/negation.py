"""Negation classification for candidate clinical mentions.

NegEx-style classifier working on a fixed token window around a mention:

1. Pseudo-negation phrases ("no change", "no further") force a
   non-negated result.
2. Pre-mention triggers ("no", "denies", "without", "ruled out") negate
   the mention unless a scope terminator sits between trigger and mention.
3. Post-mention triggers ("negative for", "resolved without") negate the
   preceding mention.

Example:
    "no vasospasm noted" -> vasospasm is negated (confidence 0.95)
    "no further seizures" -> seizures is NOT negated (pseudo-negation)
"""

import logging
import re
from dataclasses import dataclass, field

from clinical_timeline.core.config import settings

logger = logging.getLogger(__name__)

# Sentence boundaries bound the negation scope; decimal points do not.
_SENTENCE_BOUNDARY = re.compile(r"[.!?;](?!\d)|\n")


@dataclass(frozen=True)
class NegationResult:
    """Outcome of a negation check for one mention."""

    is_negated: bool
    confidence: float
    trigger: str | None = None
    position: str | None = None  # "pre", "post" or "pseudo"


@dataclass
class NegationConfig:
    """Configuration for the negation classifier."""

    window_tokens: int = field(default_factory=lambda: settings.negation_window_tokens)
    max_window_chars: int = 100
    threshold: float = field(default_factory=lambda: settings.negation_threshold)
    penalty: float = 0.5


class NegationClassifier:
    """Rule-based negation classifier.

    Trigger lists are compiled once in ``__init__``; the classifier holds
    no per-call state and is safe to share.
    """

    PSEUDO_NEGATION_TRIGGERS = [
        "no change",
        "no further",
        "no increase",
        "no longer",
        "not only",
        "not certain",
        "not sure",
        "no significant change",
    ]

    # Pre-negation triggers (negate terms that follow)
    IMMEDIATE_PRE_TRIGGERS = [
        "no",
        "not",
        "without",
        "denies",
        "denied",
        "negative for",
        "absence of",
        "absent",
        "free of",
        "ruled out",
        "rules out",
    ]

    EXTENDED_PRE_TRIGGERS = [
        "no evidence of",
        "no signs of",
        "no symptoms of",
        "did not",
        "does not",
        "cannot",
        "unable to",
        "fails to",
        "failed to",
        "never",
        "neither",
    ]

    # Post-negation triggers (negate terms that precede)
    POST_TRIGGERS = [
        "negative for",
        "resolved without",
        "unlikely",
        "was ruled out",
        "is ruled out",
        "not present",
        "not seen",
        "not noted",
        "not observed",
    ]

    SCOPE_TERMINATORS = [
        "but",
        "however",
        "although",
        "except",
        "besides",
        "yet",
        "though",
        "still",
        "nevertheless",
    ]

    def __init__(self, config: NegationConfig | None = None):
        self.config = config or NegationConfig()
        self._pseudo_patterns = self._compile(self.PSEUDO_NEGATION_TRIGGERS)
        self._immediate_patterns = self._compile(self.IMMEDIATE_PRE_TRIGGERS)
        self._extended_patterns = self._compile(self.EXTENDED_PRE_TRIGGERS)
        self._post_patterns = self._compile(self.POST_TRIGGERS)
        self._terminator_pattern = re.compile(
            "|".join(rf"\b{re.escape(t)}\b" for t in self.SCOPE_TERMINATORS)
        )

    @staticmethod
    def _compile(triggers: list[str]) -> list[tuple[str, re.Pattern[str]]]:
        return [(t, re.compile(rf"(?<![\w/]){re.escape(t)}(?![\w/])")) for t in triggers]

    def _before_window(self, text: str, start: int) -> str:
        """Return the normalized token window preceding a mention."""
        chunk = text[max(0, start - self.config.max_window_chars):start]
        boundaries = list(_SENTENCE_BOUNDARY.finditer(chunk))
        if boundaries:
            chunk = chunk[boundaries[-1].end():]
        tokens = chunk.lower().split()[-self.config.window_tokens:]
        return " ".join(t.strip(",:()") for t in tokens)

    def _after_window(self, text: str, end: int) -> str:
        """Return the normalized token window following a mention."""
        chunk = text[end:end + self.config.max_window_chars]
        boundary = _SENTENCE_BOUNDARY.search(chunk)
        if boundary:
            chunk = chunk[:boundary.start()]
        tokens = chunk.lower().split()[:self.config.window_tokens]
        return " ".join(t.strip(",:()") for t in tokens)

    def classify(self, text: str, start: int, end: int) -> NegationResult:
        """Classify the mention at ``text[start:end]``.

        Args:
            text: Full source text.
            start: Mention start offset.
            end: Mention end offset (exclusive).

        Returns:
            NegationResult with the deciding trigger, if any.
        """
        if not text or start < 0 or end <= start:
            return NegationResult(is_negated=False, confidence=0.0)

        before = self._before_window(text, start)
        after = self._after_window(text, end)

        # Pseudo-negation overrides every other trigger
        for trigger, pattern in self._pseudo_patterns:
            if pattern.search(before) or pattern.search(after):
                return NegationResult(False, 0.9, trigger, "pseudo")

        for patterns, confidence in (
            (self._immediate_patterns, 0.95),
            (self._extended_patterns, 0.9),
        ):
            for trigger, pattern in patterns:
                matches = list(pattern.finditer(before))
                if not matches:
                    continue
                between = before[matches[-1].end():]
                if self._terminator_pattern.search(between):
                    continue
                return NegationResult(True, confidence, trigger, "pre")

        for trigger, pattern in self._post_patterns:
            if pattern.search(after):
                return NegationResult(True, 0.85, trigger, "post")

        return NegationResult(is_negated=False, confidence=0.0)

    def should_drop(self, result: NegationResult) -> bool:
        """Check whether a negated mention is confidently excluded."""
        return result.is_negated and result.confidence >= self.config.threshold

    def apply_penalty(self, confidence: float, result: NegationResult) -> float:
        """Penalize a mention that is negated below the drop threshold."""
        if result.is_negated:
            return confidence * self.config.penalty
        return confidence


# Singleton instance
_negation_classifier: NegationClassifier | None = None


def get_negation_classifier() -> NegationClassifier:
    """Get the singleton negation classifier."""
    global _negation_classifier
    if _negation_classifier is None:
        _negation_classifier = NegationClassifier()
    return _negation_classifier


def reset_negation_classifier() -> None:
    """Reset the singleton negation classifier (mainly for testing)."""
    global _negation_classifier
    _negation_classifier = None
