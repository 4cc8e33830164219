"""Tests for functional trajectory analysis."""

from datetime import date, timedelta

import pytest

from clinical_timeline.schemas.base import ChangeRate, EntityCategory, TrajectoryPattern, TrendShape
from clinical_timeline.services.causal_timeline import CausalTimelineBuilder
from clinical_timeline.services.functional_trajectory import (
    FunctionalTrajectoryAnalyzer,
    TrajectoryConfig,
    classify_significance,
    get_trajectory_analyzer,
    reset_trajectory_analyzer,
)

from factories import make_entity

START = date(2024, 3, 1)


@pytest.fixture
def analyzer(knowledge_base) -> FunctionalTrajectoryAnalyzer:
    return FunctionalTrajectoryAnalyzer(knowledge_base)


def _score(value, when=None, scale="kps", start=0, context=""):
    label = scale.upper()
    return make_entity(
        f"{label} {value:g}",
        EntityCategory.FUNCTIONAL_SCORE,
        when,
        start=start,
        value=float(value),
        scale=scale,
        context=context,
    )


def _weekly(*values, scale="kps"):
    """One sample per week starting 2024-03-01."""
    return [
        _score(v, START + timedelta(weeks=i), scale=scale, start=i * 10)
        for i, v in enumerate(values)
    ]


class TestSignificance:
    """Tests for significance bands."""

    @pytest.mark.parametrize("magnitude,band", [
        (2, "minimal"), (5, "minor"), (14.9, "minor"), (15, "moderate"), (30, "major"),
    ])
    def test_bands(self, magnitude, band):
        assert classify_significance(magnitude) == band


class TestSamples:
    """Tests for building the normalized series."""

    def test_lower_is_better_scale_inverted(self, analyzer):
        samples = analyzer.build_samples([_score(4, START, scale="mrs")])
        assert samples[0].normalized_value == pytest.approx(33.33, abs=0.01)

    def test_non_scores_ignored(self, analyzer):
        entities = [make_entity("vasospasm", EntityCategory.COMPLICATION, START)]
        assert analyzer.build_samples(entities) == []

    def test_undated_sample_anchored_to_discharge(self, analyzer, reference_dates):
        timeline = CausalTimelineBuilder().build([], reference_dates)
        entities = [
            _score(60, START, start=0),
            _score(80, None, start=50, context="KPS 80 at discharge"),
        ]

        samples = analyzer.build_samples(entities, timeline)

        assert [s.timestamp for s in samples] == [START, date(2024, 3, 20)]

    def test_undated_sample_without_anchor_dropped(self, analyzer):
        assert analyzer.build_samples([_score(80, None, context="KPS 80 today")]) == []


class TestChanges:
    """Tests for status change detection."""

    def test_changes_between_adjacent_samples(self, analyzer):
        samples = analyzer.build_samples(_weekly(60, 55, 70))
        changes = analyzer.detect_changes(samples)

        assert [(c.direction, c.significance) for c in changes] == [
            ("deterioration", "minor"),
            ("improvement", "moderate"),
        ]
        assert changes[1].days == 7

    def test_unchanged_samples_skipped(self, analyzer):
        samples = analyzer.build_samples(_weekly(70, 70))
        assert analyzer.detect_changes(samples) == []


class TestTrajectory:
    """Tests for pattern, trend and rate characterization."""

    def test_improving_linear_rapid(self, analyzer):
        result = analyzer.analyze(_weekly(60, 55, 70, 85))

        trajectory = result.trajectory
        assert trajectory.pattern == TrajectoryPattern.IMPROVING
        assert trajectory.trend == TrendShape.LINEAR
        assert trajectory.rate == ChangeRate.RAPID
        assert trajectory.overall_change == pytest.approx(25.0)
        assert trajectory.duration_days == 21

    def test_declining(self, analyzer):
        trajectory = analyzer.analyze(_weekly(90, 70, 50)).trajectory
        assert trajectory.pattern == TrajectoryPattern.DECLINING
        assert trajectory.trend == TrendShape.LINEAR

    def test_stable_plateau(self, analyzer):
        trajectory = analyzer.analyze(_weekly(70, 72)).trajectory
        assert trajectory.pattern == TrajectoryPattern.STABLE
        assert trajectory.trend == TrendShape.PLATEAU

    def test_fluctuating(self, analyzer):
        trajectory = analyzer.analyze(_weekly(50, 80, 50, 75)).trajectory
        assert trajectory.pattern == TrajectoryPattern.FLUCTUATING
        assert trajectory.confidence == pytest.approx(0.72)

    def test_u_shaped(self, analyzer):
        assert analyzer.analyze(_weekly(80, 40, 85)).trajectory.trend == TrendShape.U_SHAPED

    def test_inverted_u(self, analyzer):
        assert analyzer.analyze(_weekly(40, 80, 45)).trajectory.trend == TrendShape.INVERTED_U

    def test_stepwise(self, analyzer):
        trajectory = analyzer.analyze(_weekly(50, 50, 50, 90)).trajectory
        assert trajectory.trend == TrendShape.STEPWISE
        assert trajectory.pattern == TrajectoryPattern.IMPROVING

    def test_slow_rate(self, analyzer):
        entities = [_score(50, START, start=0), _score(62, START + timedelta(days=365), start=10)]
        trajectory = analyzer.analyze(entities).trajectory
        assert trajectory.points_per_week < 0.5
        assert trajectory.rate == ChangeRate.SLOW

    def test_same_day_samples_have_no_rate(self, analyzer):
        entities = [_score(50, START, start=0), _score(80, START, start=10)]
        trajectory = analyzer.analyze(entities).trajectory
        assert trajectory.rate is None
        assert trajectory.duration_days == 0


class TestMilestones:
    """Tests for functional milestones."""

    def test_nadir_and_turning_point(self, analyzer):
        milestones = analyzer.analyze(_weekly(60, 55, 70, 85)).milestones

        assert milestones["nadir"]["raw_value"] == 55.0
        assert milestones["admission_baseline"]["raw_value"] == 60.0
        assert milestones["discharge_status"]["raw_value"] == 85.0
        assert [p["raw_value"] for p in milestones["turning_points"]] == [55.0]

    def test_context_selects_baseline(self, analyzer):
        entities = [
            _score(70, START, start=0),
            _score(50, START + timedelta(days=1), start=10, context="KPS 50 on admission"),
            _score(80, START + timedelta(days=9), start=20),
        ]
        milestones = analyzer.analyze(entities).milestones
        assert milestones["admission_baseline"]["raw_value"] == 50.0


class TestPrognosis:
    """Tests for expected versus actual discharge status."""

    def test_compare_prognosis(self):
        comparison = FunctionalTrajectoryAnalyzer.compare_prognosis(70, 85)
        assert comparison["variance"] == 15
        assert comparison["outperformed"] is True
        assert comparison["assessment"] == "outperformed expectation"

    def test_underperformed(self):
        comparison = FunctionalTrajectoryAnalyzer.compare_prognosis(90, 85)
        assert comparison["outperformed"] is False
        assert comparison["assessment"] == "underperformed expectation"

    def test_analyze_with_expectation(self, analyzer):
        result = analyzer.analyze(_weekly(60, 85), prognostic_expectation=70)
        assert result.prognostic_comparison["actual"] == 85.0
        assert result.prognostic_comparison["variance"] == 15.0


class TestAnalyze:
    """Tests for the public entry point."""

    def test_insufficient_data(self, analyzer):
        result = analyzer.analyze(_weekly(70))
        assert not result.has_data
        assert result.trajectory is None
        assert result.summary == {"sample_count": 1}

    def test_summary(self, analyzer):
        result = analyzer.analyze(_weekly(60, 55, 70, 85))
        assert result.has_data
        assert result.summary["sample_count"] == 4
        assert result.summary["scales"] == ["kps"]
        assert result.summary["change_count"] == 3
        assert result.summary["significant_change_count"] == 2
        assert result.summary["pattern"] == "IMPROVING"

    def test_failure_sets_error(self, analyzer):
        result = analyzer.analyze([object()])
        assert not result.has_data
        assert result.error is not None

    def test_custom_thresholds(self, knowledge_base):
        analyzer = FunctionalTrajectoryAnalyzer(knowledge_base, TrajectoryConfig(stable_threshold=30.0))
        trajectory = analyzer.analyze(_weekly(60, 55, 70, 85)).trajectory
        assert trajectory.pattern == TrajectoryPattern.STABLE


class TestSingleton:
    """Test singleton accessors."""

    def test_reset_creates_new_instance(self):
        first = get_trajectory_analyzer()
        assert get_trajectory_analyzer() is first
        reset_trajectory_analyzer()
        assert get_trajectory_analyzer() is not first
