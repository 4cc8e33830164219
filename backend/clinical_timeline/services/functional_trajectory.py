"""Functional status trajectory analysis.

Normalizes functional score samples (KPS, ECOG, mRS, GCS, NIHSS, ASIA)
to a common 0-100 scale where higher always means better function,
detects status changes between adjacent samples of the same scale and
characterizes the series:

    pattern: IMPROVING / DECLINING / STABLE / FLUCTUATING
    trend:   LINEAR / STEPWISE / PLATEAU / U_SHAPED / INVERTED_U
    rate:    RAPID (> 2 pts/week) / GRADUAL (0.5-2) / SLOW (< 0.5)

Significance of a change is its share of the scale range:
minimal < 5%, minor 5-14%, moderate 15-29%, major >= 30%.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

import numpy as np

from clinical_timeline.schemas.base import ChangeRate, EntityCategory, TrajectoryPattern, TrendShape
from clinical_timeline.services.causal_timeline import CausalTimeline
from clinical_timeline.services.deduplication import CanonicalEntity
from clinical_timeline.services.knowledge_base import ClinicalKnowledgeBase, get_knowledge_base

logger = logging.getLogger(__name__)

SIGNIFICANCE_ORDER = ["minimal", "minor", "moderate", "major"]

_ADMISSION_CONTEXT = re.compile(r"\b(?:admission|admit(?:ted)?|on arrival|presentation|presented)\b", re.IGNORECASE)
_DISCHARGE_CONTEXT = re.compile(r"\bdischarg(?:e|ed)\b", re.IGNORECASE)


# ============================================================================
# Data Classes
# ============================================================================


@dataclass(frozen=True)
class FunctionalScoreSample:
    """One functional score reading on the normalized scale."""

    score_type: str
    raw_value: float
    normalized_value: float
    timestamp: date
    context: str = ""
    entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "score_type": self.score_type,
            "raw_value": self.raw_value,
            "normalized_value": round(self.normalized_value, 1),
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "entity_id": self.entity_id,
        }


@dataclass(frozen=True)
class StatusChange:
    """Change between two adjacent samples of one scale."""

    scale: str
    from_sample: FunctionalScoreSample
    to_sample: FunctionalScoreSample
    delta_raw: float
    delta_normalized: float
    days: int
    direction: str  # improvement or deterioration
    magnitude: float
    significance: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "scale": self.scale,
            "from": self.from_sample.to_dict(),
            "to": self.to_sample.to_dict(),
            "delta_raw": self.delta_raw,
            "delta_normalized": round(self.delta_normalized, 1),
            "days": self.days,
            "direction": self.direction,
            "magnitude": round(self.magnitude, 1),
            "significance": self.significance,
        }


@dataclass(frozen=True)
class Trajectory:
    pattern: TrajectoryPattern
    trend: TrendShape
    rate: ChangeRate | None
    overall_change: float
    duration_days: int
    confidence: float
    points_per_week: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern.value,
            "trend": self.trend.value,
            "rate": self.rate.value if self.rate else None,
            "overall_change": round(self.overall_change, 1),
            "duration_days": self.duration_days,
            "confidence": round(self.confidence, 3),
            "points_per_week": round(self.points_per_week, 2) if self.points_per_week is not None else None,
        }


@dataclass
class FunctionalEvolution:
    has_data: bool = False
    score_timeline: list[FunctionalScoreSample] = field(default_factory=list)
    status_changes: list[StatusChange] = field(default_factory=list)
    trajectory: Trajectory | None = None
    milestones: dict[str, Any] = field(default_factory=dict)
    prognostic_comparison: dict[str, Any] | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_data": self.has_data,
            "score_timeline": [s.to_dict() for s in self.score_timeline],
            "status_changes": [c.to_dict() for c in self.status_changes],
            "trajectory": self.trajectory.to_dict() if self.trajectory else None,
            "milestones": dict(self.milestones),
            "prognostic_comparison": self.prognostic_comparison,
            "summary": dict(self.summary),
            "error": self.error,
        }


@dataclass
class TrajectoryConfig:
    """Thresholds for trajectory characterization."""

    stable_threshold: float = 10.0
    fluctuation_significance: str = "moderate"
    rapid_rate: float = 2.0
    gradual_rate: float = 0.5
    shape_threshold: float = 10.0
    min_samples: int = 2


def classify_significance(magnitude: float) -> str:
    """Significance band for a change given as a percentage of range."""
    if magnitude < 5:
        return "minimal"
    if magnitude < 15:
        return "minor"
    if magnitude < 30:
        return "moderate"
    return "major"


# ============================================================================
# Analyzer
# ============================================================================


class FunctionalTrajectoryAnalyzer:
    """Builds and characterizes the functional score series."""

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        config: TrajectoryConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.config = config or TrajectoryConfig()

    def _anchor_date(self, entity: CanonicalEntity, timeline: CausalTimeline | None) -> date | None:
        """Date an undated sample by its admission/discharge wording."""
        if entity.date is not None:
            return entity.date
        if timeline is None:
            return None
        context = entity.context
        for milestone_type, pattern in (
            ("discharge", _DISCHARGE_CONTEXT),
            ("admission", _ADMISSION_CONTEXT),
        ):
            milestone = timeline.milestone(milestone_type)
            if milestone is not None and milestone.date is not None and pattern.search(context):
                return milestone.date
        return None

    def build_samples(
        self,
        entities: Iterable[CanonicalEntity],
        timeline: CausalTimeline | None = None,
    ) -> list[FunctionalScoreSample]:
        """Build the normalized score series sorted by date."""
        ordered: list[tuple[date, tuple[int, int], FunctionalScoreSample]] = []
        for entity in entities:
            if entity.category != EntityCategory.FUNCTIONAL_SCORE:
                continue
            if entity.scale is None or entity.value is None:
                continue
            scale = self.knowledge_base.score_scales.get(entity.scale)
            if scale is None:
                continue
            timestamp = self._anchor_date(entity, timeline)
            if timestamp is None:
                logger.debug(f"Dropping undated functional score {entity.canonical_name}")
                continue
            sample = FunctionalScoreSample(
                score_type=scale.key,
                raw_value=entity.value,
                normalized_value=scale.normalize(entity.value),
                timestamp=timestamp,
                context=entity.context,
                entity_id=entity.id,
            )
            ordered.append((timestamp, entity.position, sample))
        ordered.sort(key=lambda item: (item[0], item[1]))
        return [sample for _, _, sample in ordered]

    def detect_changes(self, samples: list[FunctionalScoreSample]) -> list[StatusChange]:
        """Detect changes between adjacent samples of the same scale."""
        changes: list[StatusChange] = []
        last_by_scale: dict[str, FunctionalScoreSample] = {}
        for sample in samples:
            previous = last_by_scale.get(sample.score_type)
            last_by_scale[sample.score_type] = sample
            if previous is None:
                continue
            delta_normalized = sample.normalized_value - previous.normalized_value
            if delta_normalized == 0:
                continue
            magnitude = abs(delta_normalized)
            changes.append(StatusChange(
                scale=sample.score_type,
                from_sample=previous,
                to_sample=sample,
                delta_raw=sample.raw_value - previous.raw_value,
                delta_normalized=delta_normalized,
                days=(sample.timestamp - previous.timestamp).days,
                direction="improvement" if delta_normalized > 0 else "deterioration",
                magnitude=magnitude,
                significance=classify_significance(magnitude),
            ))
        return changes

    def _pattern(self, overall_change: float, changes: list[StatusChange]) -> TrajectoryPattern:
        if abs(overall_change) < self.config.stable_threshold:
            return TrajectoryPattern.STABLE
        floor = SIGNIFICANCE_ORDER.index(self.config.fluctuation_significance)
        significant = [c for c in changes if SIGNIFICANCE_ORDER.index(c.significance) >= floor]
        directions = {c.direction for c in significant}
        if len(directions) > 1:
            return TrajectoryPattern.FLUCTUATING
        return TrajectoryPattern.IMPROVING if overall_change > 0 else TrajectoryPattern.DECLINING

    def _trend(self, values: np.ndarray) -> TrendShape:
        threshold = self.config.shape_threshold
        total = float(values[-1] - values[0])
        if len(values) >= 3:
            low = int(np.argmin(values))
            high = int(np.argmax(values))
            if 0 < low < len(values) - 1:
                if values[0] - values[low] >= threshold and values[-1] - values[low] >= threshold:
                    return TrendShape.U_SHAPED
            if 0 < high < len(values) - 1:
                if values[high] - values[0] >= threshold and values[high] - values[-1] >= threshold:
                    return TrendShape.INVERTED_U

        if abs(total) < threshold:
            return TrendShape.PLATEAU

        half = len(values) // 2
        first_half = float(values[half] - values[0])
        second_half = float(values[-1] - values[half])
        if len(values) >= 3 and abs(second_half) < 0.2 * abs(first_half):
            return TrendShape.PLATEAU

        steps = np.abs(np.diff(values))
        if len(values) >= 3 and float(steps.max()) > 0.6 * abs(total):
            return TrendShape.STEPWISE
        return TrendShape.LINEAR

    def _rate(self, overall_change: float, duration_days: int) -> tuple[ChangeRate | None, float | None]:
        if duration_days <= 0:
            return None, None
        per_week = abs(overall_change) / (duration_days / 7)
        if per_week > self.config.rapid_rate:
            return ChangeRate.RAPID, per_week
        if per_week >= self.config.gradual_rate:
            return ChangeRate.GRADUAL, per_week
        return ChangeRate.SLOW, per_week

    def characterize(
        self, samples: list[FunctionalScoreSample], changes: list[StatusChange]
    ) -> Trajectory:
        values = np.array([s.normalized_value for s in samples], dtype=float)
        overall_change = float(values[-1] - values[0])
        duration_days = (samples[-1].timestamp - samples[0].timestamp).days
        pattern = self._pattern(overall_change, changes)
        rate, per_week = self._rate(overall_change, duration_days)

        confidence = min(0.95, 0.5 + 0.1 * len(samples))
        if pattern == TrajectoryPattern.FLUCTUATING:
            confidence *= 0.8
        if len({s.score_type for s in samples}) > 1:
            confidence *= 0.9

        return Trajectory(
            pattern=pattern,
            trend=self._trend(values),
            rate=rate,
            overall_change=overall_change,
            duration_days=duration_days,
            confidence=max(0.0, min(1.0, confidence)),
            points_per_week=per_week,
        )

    def _milestones(self, samples: list[FunctionalScoreSample]) -> dict[str, Any]:
        values = np.array([s.normalized_value for s in samples], dtype=float)
        nadir = samples[int(np.argmin(values))]

        baseline = next((s for s in samples if _ADMISSION_CONTEXT.search(s.context)), samples[0])
        discharge = next(
            (s for s in reversed(samples) if _DISCHARGE_CONTEXT.search(s.context)),
            samples[-1],
        )

        turning_points = []
        if len(values) >= 3:
            signs = np.sign(np.diff(values))
            signs = signs[signs != 0]
            nonzero_index = [i for i, d in enumerate(np.diff(values)) if d != 0]
            for k in range(1, len(signs)):
                if signs[k] != signs[k - 1]:
                    turning_points.append(samples[nonzero_index[k]].to_dict())

        return {
            "admission_baseline": baseline.to_dict(),
            "nadir": nadir.to_dict(),
            "discharge_status": discharge.to_dict(),
            "turning_points": turning_points,
        }

    @staticmethod
    def compare_prognosis(expected: float, actual: float) -> dict[str, Any]:
        """Compare the expected (0-100) with the actual discharge status."""
        variance = actual - expected
        if variance > 0:
            assessment = "outperformed expectation"
        elif variance < 0:
            assessment = "underperformed expectation"
        else:
            assessment = "met expectation"
        return {
            "expected": expected,
            "actual": round(actual, 1),
            "variance": round(variance, 1),
            "outperformed": variance > 0,
            "assessment": assessment,
        }

    def analyze(
        self,
        entities: Iterable[CanonicalEntity],
        timeline: CausalTimeline | None = None,
        prognostic_expectation: float | None = None,
    ) -> FunctionalEvolution:
        """Analyze the functional trajectory.

        Args:
            entities: Canonical entities; only functional scores are used.
            timeline: Causal timeline used to anchor undated samples.
            prognostic_expectation: Expected discharge status (0-100).

        Returns:
            FunctionalEvolution; ``has_data`` is False below two samples.
        """
        try:
            samples = self.build_samples(entities, timeline)
            if len(samples) < self.config.min_samples:
                return FunctionalEvolution(
                    has_data=False,
                    score_timeline=samples,
                    summary={"sample_count": len(samples)},
                )

            changes = self.detect_changes(samples)
            trajectory = self.characterize(samples, changes)
            milestones = self._milestones(samples)

            comparison = None
            if prognostic_expectation is not None:
                actual = milestones["discharge_status"]["normalized_value"]
                comparison = self.compare_prognosis(float(prognostic_expectation), float(actual))

            summary = {
                "sample_count": len(samples),
                "scales": sorted({s.score_type for s in samples}),
                "change_count": len(changes),
                "significant_change_count": sum(
                    1 for c in changes if c.significance in ("moderate", "major")
                ),
                "pattern": trajectory.pattern.value,
                "overall_change": round(trajectory.overall_change, 1),
            }
            result = FunctionalEvolution(
                has_data=True,
                score_timeline=samples,
                status_changes=changes,
                trajectory=trajectory,
                milestones=milestones,
                prognostic_comparison=comparison,
                summary=summary,
            )
        except Exception as e:
            logger.exception(f"Functional trajectory analysis failed: {e}")
            return FunctionalEvolution(has_data=False, error=str(e))

        logger.info(
            f"Functional trajectory: {trajectory.pattern.value} over {len(samples)} samples"
        )
        return result


# Singleton instance
_trajectory_analyzer: FunctionalTrajectoryAnalyzer | None = None


def get_trajectory_analyzer() -> FunctionalTrajectoryAnalyzer:
    """Get the singleton functional trajectory analyzer."""
    global _trajectory_analyzer
    if _trajectory_analyzer is None:
        _trajectory_analyzer = FunctionalTrajectoryAnalyzer()
    return _trajectory_analyzer


def reset_trajectory_analyzer() -> None:
    """Reset the singleton functional trajectory analyzer (mainly for testing)."""
    global _trajectory_analyzer
    _trajectory_analyzer = None
