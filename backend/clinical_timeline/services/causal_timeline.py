"""Causal timeline construction.

Aggregates canonical entities of every category (plus key dates) into
one event list sorted by date, identifies milestones and infers
relationships with fixed time windows:

- COMPLICATION -> THERAPEUTIC within 48h          TRIGGERS    (0.8)
- procedure -> COMPLICATION within 14 days         LEADS_TO    (0.85 / 0.7)
- THERAPEUTIC -> OUTCOME within 21 days            RESPONDS_TO (0.7)
- COMPLICATION -> other COMPLICATION within 72h    CAUSES      (0.6)
- prophylactic agent, no expected complication     PREVENTS    (0.85)

A same-day TRIGGERS edge is drawn in either narrative order. An expected
complication documented without a date still rules out PREVENTS.

PREVENTS targets a synthetic "absence" OUTCOME event so that every
relationship endpoint exists in the event list.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable

from clinical_timeline.core.config import settings
from clinical_timeline.schemas.base import EntityCategory, EventCategory, RelationshipType
from clinical_timeline.services.deduplication import CanonicalEntity
from clinical_timeline.services.knowledge_base import (
    ClinicalKnowledgeBase,
    ProphylaxisRule,
    get_knowledge_base,
)
from clinical_timeline.services.similarity import matches_term
from clinical_timeline.services.temporal_context import ReferenceDates

logger = logging.getLogger(__name__)

CATEGORY_MAP = {
    EntityCategory.IMAGING: EventCategory.DIAGNOSTIC,
    EntityCategory.PROCEDURE: EventCategory.THERAPEUTIC,
    EntityCategory.MEDICATION: EventCategory.THERAPEUTIC,
    EntityCategory.INTERVENTION: EventCategory.THERAPEUTIC,
    EntityCategory.COMPLICATION: EventCategory.COMPLICATION,
    EntityCategory.FUNCTIONAL_SCORE: EventCategory.OUTCOME,
    EntityCategory.CLINICAL_STATUS: EventCategory.OUTCOME,
}

CATEGORY_PRIORITY = {
    EventCategory.DIAGNOSTIC: 0,
    EventCategory.THERAPEUTIC: 1,
    EventCategory.COMPLICATION: 2,
    EventCategory.OUTCOME: 3,
}

KIND_KEY_DATE = "key_date"
KIND_ABSENCE = "absence"

# Narrative positions for events that have no source text
_LEADING_POSITIONS = {"ictus": (-2, 0), "admission": (-1, 0)}
_TRAILING_POSITION = (10**9, 0)
_SYNTHETIC_POSITION = (10**9 - 1, 0)


# ============================================================================
# Data Classes
# ============================================================================


@dataclass(frozen=True)
class Relationship:
    """A directed, confidence-scored relationship between two events."""

    from_event_id: str
    to_event_id: str
    type: RelationshipType
    confidence: float
    time_window_label: str
    description: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_event_id": self.from_event_id,
            "to_event_id": self.to_event_id,
            "type": self.type.value,
            "confidence": round(self.confidence, 3),
            "time_window_label": self.time_window_label,
            "description": self.description,
            "attributes": dict(self.attributes),
        }


@dataclass
class TimelineEvent:
    """One event of the causal timeline."""

    id: str
    timestamp: date | None
    category: EventCategory
    description: str
    source_entity_id: str | None = None
    relationships: list[Relationship] = field(default_factory=list)
    entity_category: EntityCategory | None = None
    kind: str = ""
    is_synthetic: bool = False
    confidence: float = 1.0
    position: tuple[int, int] = (0, 0)
    value: float | None = None
    scale: str | None = None
    context: str = ""

    @property
    def date_resolved(self) -> bool:
        return self.timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "category": self.category.value,
            "description": self.description,
            "source_entity_id": self.source_entity_id,
            "entity_category": self.entity_category.value if self.entity_category else None,
            "kind": self.kind,
            "is_synthetic": self.is_synthetic,
            "date_resolved": self.date_resolved,
            "confidence": round(self.confidence, 3),
            "relationships": [r.to_dict() for r in self.relationships],
        }


@dataclass(frozen=True)
class Milestone:
    """A first-occurrence milestone of the clinical course."""

    type: str  # ictus, admission, surgery, first_complication, discharge
    event_id: str
    date: date | None
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "event_id": self.event_id,
            "date": self.date.isoformat() if self.date else None,
            "description": self.description,
        }


@dataclass
class CausalTimeline:
    """Sorted events, milestones and inferred relationships."""

    events: list[TimelineEvent] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    unresolved_event_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def dated_events(self) -> list[TimelineEvent]:
        return [e for e in self.events if e.timestamp is not None]

    def get_event(self, event_id: str) -> TimelineEvent | None:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def milestone(self, milestone_type: str) -> Milestone | None:
        for milestone in self.milestones:
            if milestone.type == milestone_type:
                return milestone
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "milestones": [m.to_dict() for m in self.milestones],
            "relationships": [r.to_dict() for r in self.relationships],
            "metadata": dict(self.metadata),
            "unresolved_event_ids": list(self.unresolved_event_ids),
            "error": self.error,
        }


@dataclass
class TimelineConfig:
    """Time windows and confidences for relationship inference."""

    trigger_window_hours: int = field(default_factory=lambda: settings.trigger_window_hours)
    leads_to_window_days: int = field(default_factory=lambda: settings.leads_to_window_days)
    response_window_days: int = field(default_factory=lambda: settings.response_window_days)
    prevention_window_days: int = field(default_factory=lambda: settings.prevention_window_days)
    causes_window_hours: int = 72
    trigger_confidence: float = 0.8
    leads_to_early_confidence: float = 0.85
    leads_to_late_confidence: float = 0.7
    leads_to_early_days: int = 7
    responds_to_confidence: float = 0.7
    causes_confidence: float = 0.6
    prevents_confidence: float = 0.85


# ============================================================================
# Builder
# ============================================================================


class CausalTimelineBuilder:
    """Builds the causal timeline from canonical entities."""

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        config: TimelineConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.config = config or TimelineConfig()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _entity_event(self, entity: CanonicalEntity) -> TimelineEvent:
        return TimelineEvent(
            id="",
            timestamp=entity.date,
            category=CATEGORY_MAP[entity.category],
            description=entity.canonical_name,
            source_entity_id=entity.id,
            entity_category=entity.category,
            kind=entity.category.value,
            confidence=entity.confidence,
            position=entity.position,
            value=entity.value,
            scale=entity.scale,
            context=entity.context,
        )

    def _key_date_events(self, reference_dates: ReferenceDates) -> list[TimelineEvent]:
        events = []
        for name in ("ictus", "admission", "discharge"):
            value = getattr(reference_dates, name)
            if value is None:
                continue
            events.append(TimelineEvent(
                id="",
                timestamp=value,
                category=EventCategory.OUTCOME,
                description=name.capitalize(),
                kind=KIND_KEY_DATE,
                position=_LEADING_POSITIONS.get(name, _TRAILING_POSITION),
                context=name,
            ))
        return events

    @staticmethod
    def _sort(events: list[TimelineEvent]) -> list[TimelineEvent]:
        dated = sorted(
            (e for e in events if e.timestamp is not None),
            key=lambda e: (e.timestamp, e.position, CATEGORY_PRIORITY[e.category]),
        )
        undated = sorted(
            (e for e in events if e.timestamp is None),
            key=lambda e: (e.position, CATEGORY_PRIORITY[e.category]),
        )
        return dated + undated

    # ------------------------------------------------------------------
    # Prophylaxis
    # ------------------------------------------------------------------

    def prophylaxis_rule(self, event: TimelineEvent) -> ProphylaxisRule | None:
        """Find the prophylaxis rule whose agent names this event, if any."""
        if event.category != EventCategory.THERAPEUTIC:
            return None
        synonyms = self.knowledge_base.synonym_groups(event.entity_category)
        for rule in self.knowledge_base.prophylaxis_rules:
            if matches_term(event.description, rule.agent, synonyms):
                return rule
        return None

    def is_expected_complication(self, event: TimelineEvent, rule: ProphylaxisRule) -> bool:
        if event.category != EventCategory.COMPLICATION:
            return False
        synonyms = self.knowledge_base.synonym_groups(EntityCategory.COMPLICATION)
        return matches_term(event.description, rule.expected_complication, synonyms)

    def undated_complications(
        self, events: Iterable[TimelineEvent], rule: ProphylaxisRule
    ) -> list[TimelineEvent]:
        """Expected complications documented without a resolvable date."""
        return [
            e for e in events
            if e.timestamp is None and self.is_expected_complication(e, rule)
        ]

    def _absence_events(
        self, ordered: list[TimelineEvent]
    ) -> list[tuple[TimelineEvent, TimelineEvent, ProphylaxisRule]]:
        """Build synthetic absence events for prophylaxis without complication."""
        dated = [e for e in ordered if e.timestamp is not None]
        seen_rules: set[ProphylaxisRule] = set()
        absences = []
        for agent in dated:
            rule = self.prophylaxis_rule(agent)
            if rule is None or rule in seen_rules:
                continue
            seen_rules.add(rule)
            window_days = rule.window_days or self.config.prevention_window_days
            window_end = agent.timestamp + timedelta(days=window_days)
            # An undated onset may fall inside the window, so it rules out prevention
            occurred = any(
                self.is_expected_complication(e, rule)
                and agent.timestamp <= e.timestamp <= window_end
                for e in dated
            ) or bool(self.undated_complications(ordered, rule))
            if occurred:
                continue
            observed = [
                e.timestamp for e in dated
                if agent.timestamp <= e.timestamp <= window_end
            ]
            absence = TimelineEvent(
                id="",
                timestamp=max(observed, default=agent.timestamp),
                category=EventCategory.OUTCOME,
                description=f"No {rule.expected_complication} within {window_days} days of {agent.description}",
                kind=KIND_ABSENCE,
                is_synthetic=True,
                confidence=self.config.prevents_confidence,
                position=_SYNTHETIC_POSITION,
            )
            absences.append((agent, absence, rule))
        return absences

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _relationships(
        self,
        ordered: list[TimelineEvent],
        absences: list[tuple[TimelineEvent, TimelineEvent, ProphylaxisRule]],
    ) -> list[Relationship]:
        cfg = self.config
        dated = [e for e in ordered if e.timestamp is not None and e.kind != KIND_KEY_DATE]
        relationships: list[Relationship] = []

        for i, source in enumerate(dated):
            later = dated[i + 1:]

            if source.category == EventCategory.COMPLICATION:
                # Same-day treatment may be charted before the complication it answers
                same_day_before = [
                    e for e in dated[:i]
                    if e.timestamp == source.timestamp and e.category == EventCategory.THERAPEUTIC
                ]
                for target in same_day_before + later:
                    delta = (target.timestamp - source.timestamp).days
                    if target.category == EventCategory.THERAPEUTIC and delta * 24 <= cfg.trigger_window_hours:
                        relationships.append(Relationship(
                            from_event_id=source.id,
                            to_event_id=target.id,
                            type=RelationshipType.TRIGGERS,
                            confidence=cfg.trigger_confidence,
                            time_window_label="same day" if delta == 0 else f"{delta * 24}h",
                            description=f"{source.description} triggered {target.description}",
                            attributes={"urgency": "urgent" if delta == 0 else "prompt"},
                        ))
                    elif (
                        target.category == EventCategory.COMPLICATION
                        and delta * 24 <= cfg.causes_window_hours
                        and target.description.lower() != source.description.lower()
                    ):
                        relationships.append(Relationship(
                            from_event_id=source.id,
                            to_event_id=target.id,
                            type=RelationshipType.CAUSES,
                            confidence=cfg.causes_confidence,
                            time_window_label="same day" if delta == 0 else f"{delta * 24}h",
                            description=f"{source.description} may have caused {target.description}",
                        ))

            if source.entity_category == EntityCategory.PROCEDURE:
                for target in later:
                    delta = (target.timestamp - source.timestamp).days
                    if target.category == EventCategory.COMPLICATION and delta <= cfg.leads_to_window_days:
                        early = delta <= cfg.leads_to_early_days
                        relationships.append(Relationship(
                            from_event_id=source.id,
                            to_event_id=target.id,
                            type=RelationshipType.LEADS_TO,
                            confidence=cfg.leads_to_early_confidence if early else cfg.leads_to_late_confidence,
                            time_window_label=f"POD {delta}",
                            description=f"{target.description} after {source.description}",
                        ))

        # RESPONDS_TO: each outcome answers the nearest preceding therapeutic event
        for i, target in enumerate(dated):
            if target.category != EventCategory.OUTCOME or target.is_synthetic:
                continue
            for source in reversed(dated[:i]):
                if source.category != EventCategory.THERAPEUTIC:
                    continue
                delta = (target.timestamp - source.timestamp).days
                if delta <= cfg.response_window_days:
                    relationships.append(Relationship(
                        from_event_id=source.id,
                        to_event_id=target.id,
                        type=RelationshipType.RESPONDS_TO,
                        confidence=cfg.responds_to_confidence,
                        time_window_label=f"{delta} days",
                        description=f"{target.description} after {source.description}",
                    ))
                break

        for agent, absence, rule in absences:
            relationships.append(Relationship(
                from_event_id=agent.id,
                to_event_id=absence.id,
                type=RelationshipType.PREVENTS,
                confidence=cfg.prevents_confidence,
                time_window_label=f"{rule.window_days} days",
                description=f"{agent.description} prevented {rule.expected_complication}",
                attributes={"expected_complication": rule.expected_complication},
            ))

        return relationships

    # ------------------------------------------------------------------
    # Milestones and metadata
    # ------------------------------------------------------------------

    @staticmethod
    def _milestones(ordered: list[TimelineEvent]) -> list[Milestone]:
        rules = [
            ("ictus", lambda e: e.kind == KIND_KEY_DATE and e.description == "Ictus"),
            ("admission", lambda e: e.kind == KIND_KEY_DATE and e.description == "Admission"),
            ("surgery", lambda e: e.entity_category == EntityCategory.PROCEDURE),
            ("first_complication", lambda e: e.category == EventCategory.COMPLICATION),
            ("discharge", lambda e: e.kind == KIND_KEY_DATE and e.description == "Discharge"),
        ]
        milestones = []
        for milestone_type, predicate in rules:
            for event in ordered:
                if predicate(event):
                    milestones.append(Milestone(
                        type=milestone_type,
                        event_id=event.id,
                        date=event.timestamp,
                        description=event.description,
                    ))
                    break
        return milestones

    @staticmethod
    def _metadata(
        events: list[TimelineEvent],
        relationships: list[Relationship],
        milestones: list[Milestone],
    ) -> dict[str, Any]:
        dates = [e.timestamp for e in events if e.timestamp is not None]
        return {
            "event_count": len(events),
            "relationship_count": len(relationships),
            "milestone_count": len(milestones),
            "date_range": {
                "start": min(dates).isoformat() if dates else None,
                "end": max(dates).isoformat() if dates else None,
            },
            "unresolved_count": sum(1 for e in events if e.timestamp is None),
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(
        self,
        entities: Iterable[CanonicalEntity],
        reference_dates: ReferenceDates | None = None,
    ) -> CausalTimeline:
        """Build the causal timeline.

        Args:
            entities: Canonical entities of all categories (linked and
                standalone); not mutated.
            reference_dates: Key dates added as events and milestones.

        Returns:
            CausalTimeline; empty with ``error`` set if building failed.
        """
        try:
            events = [self._entity_event(e) for e in entities]
            events.extend(self._key_date_events(reference_dates or ReferenceDates()))

            ordered = self._sort(events)
            absences = self._absence_events(ordered)
            ordered = self._sort(ordered + [absence for _, absence, _ in absences])

            for number, event in enumerate(ordered, start=1):
                event.id = f"event_{number:03d}"

            relationships = self._relationships(ordered, absences)
            events_by_id = {e.id: e for e in ordered}
            for relationship in relationships:
                events_by_id[relationship.from_event_id].relationships.append(relationship)

            milestones = self._milestones(ordered)
            timeline = CausalTimeline(
                events=ordered,
                milestones=milestones,
                relationships=relationships,
                metadata=self._metadata(ordered, relationships, milestones),
                unresolved_event_ids=[e.id for e in ordered if e.timestamp is None],
            )
        except Exception as e:
            logger.exception(f"Causal timeline build failed: {e}")
            return CausalTimeline(
                metadata=self._metadata([], [], []),
                error=str(e),
            )

        logger.info(
            f"Timeline built: {len(timeline.events)} events, "
            f"{len(timeline.relationships)} relationships, "
            f"{len(timeline.milestones)} milestones"
        )
        return timeline


# Singleton instance
_timeline_builder: CausalTimelineBuilder | None = None


def get_timeline_builder() -> CausalTimelineBuilder:
    """Get the singleton causal timeline builder."""
    global _timeline_builder
    if _timeline_builder is None:
        _timeline_builder = CausalTimelineBuilder()
    return _timeline_builder


def reset_timeline_builder() -> None:
    """Reset the singleton causal timeline builder (mainly for testing)."""
    global _timeline_builder
    _timeline_builder = None
