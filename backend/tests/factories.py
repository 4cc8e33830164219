"""Builders for service-level test inputs."""

from datetime import date

from clinical_timeline.schemas.base import EntityCategory, MentionClassification
from clinical_timeline.services.deduplication import CanonicalEntity
from clinical_timeline.services.entity_extraction import Mention
from clinical_timeline.services.temporal_context import TemporalContext


def make_mention(
    name: str,
    category: EntityCategory = EntityCategory.PROCEDURE,
    mention_date: date | None = None,
    start: int = 0,
    confidence: float = 0.8,
    reference: bool = False,
    **kwargs,
) -> Mention:
    """Build a Mention as the extractor would, without scanning text."""
    classification = MentionClassification.REFERENCE if reference else MentionClassification.NEW_EVENT
    return Mention(
        name=name,
        category=category,
        raw_span=name,
        confidence=confidence,
        date=mention_date,
        start=start,
        end=start + len(name),
        temporal=TemporalContext(classification, 0.9, resolved_date=mention_date),
        **kwargs,
    )


def make_entity(
    name: str,
    category: EntityCategory,
    entity_date: date | None = None,
    start: int = 0,
    confidence: float = 0.8,
    **kwargs,
) -> CanonicalEntity:
    """Build a single-mention canonical entity."""
    mention = make_mention(name, category, entity_date, start, confidence, **kwargs)
    return CanonicalEntity(
        id=f"{category.value}-{start:03d}",
        category=category,
        canonical_name=name,
        confidence=confidence,
        date=entity_date,
        source_mentions=[mention],
        value=mention.value,
        scale=mention.scale,
        position=mention.position,
    )
