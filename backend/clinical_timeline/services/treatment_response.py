"""Treatment-response tracking.

Pairs each dated THERAPEUTIC event with the outcome that follows it and
scores the intervention's effectiveness. Three branches are kept apart:

- Prophylaxis: a prophylactic agent whose target complication has not
  yet occurred. Absence of the complication within the window counts as
  IMPROVED, its onset as the rule's failure class (WORSENED, PARTIAL for
  seizure prophylaxis). An onset documented without a date still counts,
  at lower confidence.
- Anticoagulation management: an antithrombotic agent outside the
  prophylaxis branch. A hemorrhagic complication counts as WORSENED,
  otherwise STABLE.
- Treatment response: every other intervention. The nearest subsequent
  outcome within the lookahead window is classified by keyword buckets;
  a complication onset counts as WORSENED.

Effectiveness = speed + completeness + durability + side effects, each
worth at most 25 points. Protocol checklists are evaluated separately
for the hinted pathology.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from clinical_timeline.core.config import settings
from clinical_timeline.schemas.base import (
    EntityCategory,
    EventCategory,
    Importance,
    PathologyType,
    RelationshipType,
    ResponseClassification,
)
from clinical_timeline.services.causal_timeline import (
    KIND_ABSENCE,
    KIND_KEY_DATE,
    CausalTimeline,
    CausalTimelineBuilder,
    TimelineEvent,
)
from clinical_timeline.services.knowledge_base import (
    AnticoagulationRule,
    ClinicalKnowledgeBase,
    ProphylaxisRule,
    ProtocolItem,
    get_knowledge_base,
)
from clinical_timeline.services.similarity import matches_term, normalize_term

logger = logging.getLogger(__name__)

BRANCH_TREATMENT = "treatment_response"
BRANCH_PROPHYLAXIS = "prophylaxis"
BRANCH_ANTICOAGULATION = "anticoagulation"

COMPLETENESS_POINTS = {
    ResponseClassification.IMPROVED: 25,
    ResponseClassification.PARTIAL: 15,
    ResponseClassification.STABLE: 12,
    ResponseClassification.NO_CHANGE: 5,
    ResponseClassification.WORSENED: 0,
}


# ============================================================================
# Data Classes
# ============================================================================


@dataclass(frozen=True)
class InterventionRef:
    type: str
    name: str
    date: date | None
    event_id: str


@dataclass(frozen=True)
class OutcomeRef:
    type: str
    date: date | None
    description: str
    event_id: str | None = None


@dataclass(frozen=True)
class EffectivenessScore:
    """Effectiveness score in [0, 100] with its four sub-scores."""

    score: float
    speed: float
    completeness: float
    durability: float
    side_effects: float

    @property
    def breakdown(self) -> dict[str, float]:
        return {
            "speed": self.speed,
            "completeness": self.completeness,
            "durability": self.durability,
            "side_effects": self.side_effects,
        }

    @property
    def rating(self) -> str:
        return effectiveness_rating(self.score)


@dataclass
class TreatmentResponsePair:
    """An intervention paired with its observed outcome."""

    intervention: InterventionRef
    outcome: OutcomeRef
    classification: ResponseClassification
    effectiveness: EffectivenessScore
    confidence: float
    branch: str = BRANCH_TREATMENT
    days_to_response: int | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def rating(self) -> str:
        return self.effectiveness.rating

    def to_dict(self) -> dict[str, Any]:
        return {
            "intervention": {
                "type": self.intervention.type,
                "name": self.intervention.name,
                "date": self.intervention.date.isoformat() if self.intervention.date else None,
                "event_id": self.intervention.event_id,
            },
            "outcome": {
                "type": self.outcome.type,
                "date": self.outcome.date.isoformat() if self.outcome.date else None,
                "description": self.outcome.description,
                "event_id": self.outcome.event_id,
            },
            "classification": self.classification.value,
            "effectiveness": {
                "score": self.effectiveness.score,
                "breakdown": self.effectiveness.breakdown,
                "rating": self.rating,
            },
            "confidence": round(self.confidence, 3),
            "branch": self.branch,
            "days_to_response": self.days_to_response,
            "notes": list(self.notes),
        }


@dataclass(frozen=True)
class ProtocolComplianceItem:
    protocol: str
    expected: str
    actual: str
    compliant: bool
    importance: Importance

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "expected": self.expected,
            "actual": self.actual,
            "compliant": self.compliant,
            "importance": self.importance.value,
        }


@dataclass
class ProtocolCompliance:
    pathology: PathologyType
    items: list[ProtocolComplianceItem] = field(default_factory=list)
    percentage: float = 0.0
    overall: str = "poor"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pathology": self.pathology.value,
            "items": [i.to_dict() for i in self.items],
            "percentage": self.percentage,
            "overall": self.overall,
        }


@dataclass
class TreatmentResponseResult:
    responses: list[TreatmentResponsePair] = field(default_factory=list)
    protocol_compliance: ProtocolCompliance | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "responses": [r.to_dict() for r in self.responses],
            "protocol_compliance": self.protocol_compliance.to_dict() if self.protocol_compliance else None,
            "summary": dict(self.summary),
            "error": self.error,
        }


@dataclass
class TreatmentResponseConfig:
    """Windows and scoring knobs for treatment-response tracking."""

    lookahead_days: int = field(default_factory=lambda: settings.response_lookahead_days)
    prophylaxis_window_days: int = 21
    side_effect_penalty: float = 5.0
    high_performer_score: float = 70.0
    low_performer_score: float = 40.0


def effectiveness_rating(score: float) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    return "poor"


def speed_points(days: int | None) -> float:
    """Faster responses earn more points (max 25)."""
    if days is None:
        return 5.0
    if days <= 1:
        return 25.0
    if days <= 3:
        return 20.0
    if days <= 7:
        return 15.0
    if days <= 21:
        return 10.0
    return 5.0


# ============================================================================
# Tracker
# ============================================================================


class TreatmentResponseTracker:
    """Correlates interventions with outcomes from the causal timeline."""

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        config: TreatmentResponseConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.config = config or TreatmentResponseConfig()
        self._rules = CausalTimelineBuilder(self.knowledge_base)

    def classify_text(self, text: str) -> ResponseClassification | None:
        """Classify an outcome description with the keyword buckets."""
        normalized = f" {normalize_term(text)} "
        if not normalized.strip():
            return None
        for classification, keywords in self.knowledge_base.response_keywords.items():
            for keyword in keywords:
                if f" {normalize_term(keyword)} " in normalized:
                    return classification
        return None

    def _classify_outcome(
        self, outcome: TimelineEvent, dated: list[TimelineEvent], intervention: TimelineEvent
    ) -> ResponseClassification | None:
        if outcome.category == EventCategory.COMPLICATION:
            return ResponseClassification.WORSENED
        if outcome.scale is not None and outcome.value is not None:
            return self._classify_score(outcome, dated, intervention)
        return self.classify_text(outcome.description)

    def _classify_score(
        self, outcome: TimelineEvent, dated: list[TimelineEvent], intervention: TimelineEvent
    ) -> ResponseClassification | None:
        """Compare a score sample with the last same-scale sample before treatment."""
        scale = self.knowledge_base.score_scales.get(outcome.scale)
        if scale is None:
            return None
        baseline = None
        for event in dated:
            if event is intervention:
                break
            if event.scale == outcome.scale and event.value is not None:
                baseline = event
        if baseline is None:
            return None
        delta = scale.normalize(outcome.value) - scale.normalize(baseline.value)
        if delta > 0:
            return ResponseClassification.IMPROVED
        if delta < 0:
            return ResponseClassification.WORSENED
        return ResponseClassification.STABLE

    @staticmethod
    def _triggers(intervention: TimelineEvent, dated: list[TimelineEvent]) -> list[TimelineEvent]:
        """Complications with a TRIGGERS edge into the intervention."""
        return [
            e for e in dated
            if any(
                r.type == RelationshipType.TRIGGERS and r.to_event_id == intervention.id
                for r in e.relationships
            )
        ]

    def _target_problem(self, intervention: TimelineEvent, dated: list[TimelineEvent]) -> TimelineEvent | None:
        """Complication that triggered the intervention, else the latest one before it."""
        triggers = self._triggers(intervention, dated)
        if triggers:
            return triggers[-1]
        target = None
        for event in dated:
            if event is intervention:
                break
            if event.category == EventCategory.COMPLICATION:
                target = event
        return target

    def _score(
        self,
        intervention: TimelineEvent,
        classification: ResponseClassification,
        days: int | None,
        window_end: date,
        dated: list[TimelineEvent],
        target: TimelineEvent | None,
        outcome_event: TimelineEvent | None,
    ) -> tuple[EffectivenessScore, list[str]]:
        notes: list[str] = []
        speed = speed_points(days)
        completeness = float(COMPLETENESS_POINTS[classification])

        index = dated.index(intervention)
        after = [e for e in dated[index + 1:] if e.timestamp <= window_end]
        # A failed prophylaxis may be PARTIAL, but a complication outcome is no improvement
        improved = classification in (
            ResponseClassification.IMPROVED,
            ResponseClassification.PARTIAL,
        ) and (outcome_event is None or outcome_event.category != EventCategory.COMPLICATION)
        recurrence = False
        if target is not None and improved:
            outcome_date = outcome_event.timestamp if outcome_event is not None else intervention.timestamp
            recurrence = any(
                e.category == EventCategory.COMPLICATION
                and e.timestamp > outcome_date
                and e.description.lower() == target.description.lower()
                for e in dated[index + 1:]
            )
        if improved:
            durability = 5.0 if recurrence else 25.0
            if recurrence:
                notes.append(f"{target.description} recurred after response")
        else:
            durability = 15.0

        adverse = [
            e for e in after
            if e.category == EventCategory.COMPLICATION
            and e is not outcome_event
            and (target is None or e.description.lower() != target.description.lower())
        ]
        side_effects = max(0.0, 25.0 - self.config.side_effect_penalty * len(adverse))
        for event in adverse:
            notes.append(f"Adverse event in window: {event.description}")

        total = max(0.0, min(100.0, speed + completeness + durability + side_effects))
        return EffectivenessScore(
            score=total,
            speed=speed,
            completeness=completeness,
            durability=durability,
            side_effects=side_effects,
        ), notes

    def _prophylaxis_pair(
        self,
        intervention: TimelineEvent,
        rule: ProphylaxisRule,
        timeline: CausalTimeline,
        dated: list[TimelineEvent],
    ) -> TreatmentResponsePair:
        window_days = rule.window_days or self.config.prophylaxis_window_days
        window_end = intervention.timestamp + timedelta(days=window_days)
        index = dated.index(intervention)
        onset = next(
            (
                e for e in dated[index + 1:]
                if e.timestamp <= window_end and self._rules.is_expected_complication(e, rule)
            ),
            None,
        )
        confidence = 0.8
        if onset is None:
            undated = self._rules.undated_complications(timeline.events, rule)
            if undated:
                onset = undated[0]
                confidence = 0.6

        if onset is not None:
            classification = rule.failure_classification
            outcome = OutcomeRef("complication", onset.timestamp, onset.description, onset.id)
            outcome_event = onset
        else:
            classification = ResponseClassification.IMPROVED
            absence = self._absence_event(intervention, timeline)
            if absence is not None:
                outcome = OutcomeRef(KIND_ABSENCE, absence.timestamp, absence.description, absence.id)
            else:
                outcome = OutcomeRef(
                    KIND_ABSENCE,
                    window_end,
                    f"No {rule.expected_complication} within {window_days} days",
                )
            outcome_event = absence
            confidence = 0.85

        days = (outcome.date - intervention.timestamp).days if outcome.date else None
        effectiveness, notes = self._score(
            intervention, classification, days, window_end, dated, None, outcome_event
        )
        notes.insert(0, f"Prophylaxis against {rule.expected_complication}")
        if onset is not None and onset.timestamp is None:
            notes.append(f"{onset.description} documented without a date")
        return TreatmentResponsePair(
            intervention=self._intervention_ref(intervention),
            outcome=outcome,
            classification=classification,
            effectiveness=effectiveness,
            confidence=confidence,
            branch=BRANCH_PROPHYLAXIS,
            days_to_response=days,
            notes=notes,
        )

    def anticoagulation_rule(self, event: TimelineEvent) -> AnticoagulationRule | None:
        """Find the anticoagulation rule whose agent names this event, if any."""
        synonyms = self.knowledge_base.synonym_groups(event.entity_category)
        for rule in self.knowledge_base.anticoagulation_rules:
            if matches_term(event.description, rule.agent, synonyms):
                return rule
        return None

    def _is_hemorrhage(self, event: TimelineEvent, rule: AnticoagulationRule) -> bool:
        if event.category != EventCategory.COMPLICATION:
            return False
        synonyms = self.knowledge_base.synonym_groups(EntityCategory.COMPLICATION)
        return any(matches_term(event.description, term, synonyms) for term in rule.hemorrhage_terms)

    def _anticoagulation_pair(
        self,
        intervention: TimelineEvent,
        rule: AnticoagulationRule,
        timeline: CausalTimeline,
        dated: list[TimelineEvent],
    ) -> TreatmentResponsePair:
        window_end = intervention.timestamp + timedelta(days=rule.window_days)
        bleed = next(
            (
                e for e in dated
                if intervention.timestamp <= e.timestamp <= window_end and self._is_hemorrhage(e, rule)
            ),
            None,
        )
        confidence = 0.7
        if bleed is None:
            undated = [e for e in timeline.events if e.timestamp is None and self._is_hemorrhage(e, rule)]
            if undated:
                bleed = undated[0]
                confidence = 0.6

        if bleed is not None:
            classification = ResponseClassification.WORSENED
            outcome = OutcomeRef("complication", bleed.timestamp, bleed.description, bleed.id)
        else:
            classification = ResponseClassification.STABLE
            outcome = OutcomeRef("no_complication", None, "No hemorrhagic complications")

        days = (outcome.date - intervention.timestamp).days if outcome.date else None
        effectiveness, notes = self._score(
            intervention, classification, days, window_end, dated, None, bleed
        )
        notes.insert(0, "Anticoagulation management")
        return TreatmentResponsePair(
            intervention=self._intervention_ref(intervention),
            outcome=outcome,
            classification=classification,
            effectiveness=effectiveness,
            confidence=confidence,
            branch=BRANCH_ANTICOAGULATION,
            days_to_response=days,
            notes=notes,
        )

    @staticmethod
    def _absence_event(intervention: TimelineEvent, timeline: CausalTimeline) -> TimelineEvent | None:
        for relationship in intervention.relationships:
            if relationship.type == RelationshipType.PREVENTS:
                return timeline.get_event(relationship.to_event_id)
        return None

    def _treatment_pair(
        self, intervention: TimelineEvent, dated: list[TimelineEvent]
    ) -> TreatmentResponsePair | None:
        window_end = intervention.timestamp + timedelta(days=self.config.lookahead_days)
        index = dated.index(intervention)
        triggers = self._triggers(intervention, dated)
        for candidate in dated[index + 1:]:
            if candidate.timestamp > window_end:
                break
            if candidate.kind in (KIND_KEY_DATE, KIND_ABSENCE) or candidate in triggers:
                continue
            if candidate.category not in (EventCategory.OUTCOME, EventCategory.COMPLICATION):
                continue
            classification = self._classify_outcome(candidate, dated, intervention)
            if classification is None:
                continue

            days = (candidate.timestamp - intervention.timestamp).days
            target = self._target_problem(intervention, dated)
            effectiveness, notes = self._score(
                intervention, classification, days, window_end, dated, target, candidate
            )
            if target is not None:
                notes.insert(0, f"Treatment of {target.description}")
            return TreatmentResponsePair(
                intervention=self._intervention_ref(intervention),
                outcome=OutcomeRef(candidate.kind, candidate.timestamp, candidate.description, candidate.id),
                classification=classification,
                effectiveness=effectiveness,
                confidence=0.8 if days <= 7 else 0.6,
                branch=BRANCH_TREATMENT,
                days_to_response=days,
                notes=notes,
            )
        return None

    @staticmethod
    def _intervention_ref(event: TimelineEvent) -> InterventionRef:
        return InterventionRef(
            type=event.kind,
            name=event.description,
            date=event.timestamp,
            event_id=event.id,
        )

    def _already_occurred(
        self, intervention: TimelineEvent, rule: ProphylaxisRule, dated: list[TimelineEvent]
    ) -> bool:
        for event in dated:
            if event is intervention:
                return False
            if self._rules.is_expected_complication(event, rule):
                return True
        return False

    # ------------------------------------------------------------------
    # Protocol compliance
    # ------------------------------------------------------------------

    def _check_item(self, item: ProtocolItem, timeline: CausalTimeline) -> ProtocolComplianceItem:
        synonyms = self.knowledge_base.synonym_groups(item.category)
        matched = [
            e for e in timeline.events
            if e.entity_category == item.category and matches_term(e.description, item.agent, synonyms)
        ]
        if not matched:
            return ProtocolComplianceItem(item.protocol, item.expected, "Not documented", False, item.importance)

        dates = [e.timestamp for e in matched if e.timestamp is not None]
        if item.duration_days is None:
            return ProtocolComplianceItem(item.protocol, item.expected, "Documented", True, item.importance)

        span = (max(dates) - min(dates)).days + 1 if dates else 0
        compliant = span >= item.duration_days
        actual = f"Documented over {span} of {item.duration_days} days"
        return ProtocolComplianceItem(item.protocol, item.expected, actual, compliant, item.importance)

    def check_protocol_compliance(
        self, timeline: CausalTimeline, pathology: PathologyType | None
    ) -> ProtocolCompliance | None:
        """Evaluate the protocol checklist of a pathology against the timeline."""
        if pathology is None:
            return None
        checklist = self.knowledge_base.protocols.get(pathology)
        if not checklist:
            return ProtocolCompliance(pathology=pathology, percentage=0.0, overall="not_applicable")

        items = [self._check_item(item, timeline) for item in checklist]
        percentage = round(sum(1 for i in items if i.compliant) / len(items) * 100, 1)
        return ProtocolCompliance(
            pathology=pathology,
            items=items,
            percentage=percentage,
            overall=effectiveness_rating(percentage),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _summary(self, responses: list[TreatmentResponsePair]) -> dict[str, Any]:
        counts = {c.value: 0 for c in ResponseClassification}
        for response in responses:
            counts[response.classification.value] += 1
        scores = [r.effectiveness.score for r in responses]
        return {
            "total": len(responses),
            "by_classification": counts,
            "average_effectiveness": round(sum(scores) / len(scores), 1) if scores else None,
            "high_performers": [
                r.intervention.name for r in responses
                if r.effectiveness.score >= self.config.high_performer_score
            ],
            "low_performers": [
                r.intervention.name for r in responses
                if r.effectiveness.score < self.config.low_performer_score
            ],
        }

    def track(
        self,
        timeline: CausalTimeline,
        pathology: PathologyType | None = None,
    ) -> TreatmentResponseResult:
        """Pair interventions with outcomes and check protocol compliance.

        Args:
            timeline: Causal timeline from the builder.
            pathology: Pathology hint selecting the protocol checklist.

        Returns:
            TreatmentResponseResult; empty with ``error`` set on failure.
        """
        try:
            dated = [e for e in timeline.events if e.timestamp is not None]
            responses: list[TreatmentResponsePair] = []
            for intervention in dated:
                if intervention.category != EventCategory.THERAPEUTIC:
                    continue
                rule = self._rules.prophylaxis_rule(intervention)
                if rule is not None and not self._already_occurred(intervention, rule, dated):
                    responses.append(self._prophylaxis_pair(intervention, rule, timeline, dated))
                    continue
                anticoagulation = self.anticoagulation_rule(intervention)
                if anticoagulation is not None:
                    responses.append(
                        self._anticoagulation_pair(intervention, anticoagulation, timeline, dated)
                    )
                    continue
                pair = self._treatment_pair(intervention, dated)
                if pair is None:
                    logger.debug(f"No outcome found for {intervention.description}")
                    continue
                responses.append(pair)

            result = TreatmentResponseResult(
                responses=responses,
                protocol_compliance=self.check_protocol_compliance(timeline, pathology),
                summary=self._summary(responses),
            )
        except Exception as e:
            logger.exception(f"Treatment-response tracking failed: {e}")
            return TreatmentResponseResult(summary=self._summary([]), error=str(e))

        logger.info(f"Tracked {len(result.responses)} treatment responses")
        return result


# Singleton instance
_treatment_tracker: TreatmentResponseTracker | None = None


def get_treatment_tracker() -> TreatmentResponseTracker:
    """Get the singleton treatment-response tracker."""
    global _treatment_tracker
    if _treatment_tracker is None:
        _treatment_tracker = TreatmentResponseTracker()
    return _treatment_tracker


def reset_treatment_tracker() -> None:
    """Reset the singleton treatment-response tracker (mainly for testing)."""
    global _treatment_tracker
    _treatment_tracker = None
