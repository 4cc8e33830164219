"""Reference linking: attach back-references to canonical entities.

Each REFERENCE mention ("s/p coiling", "POD#3 after the clipping") is
scored against every canonical entity of its category with the same
similarity function used for deduplication. The best-scoring entity at
or above the link threshold receives the reference; ties go to the
entity that comes first. References that match nothing stay unlinked
and may be promoted to low-confidence standalone entities.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable

from clinical_timeline.core.config import settings
from clinical_timeline.services.deduplication import (
    CanonicalEntity,
    make_entity_id,
    next_entity_number,
)
from clinical_timeline.services.entity_extraction import Mention
from clinical_timeline.services.knowledge_base import ClinicalKnowledgeBase, get_knowledge_base
from clinical_timeline.services.similarity import SimilarityFunction, clinical_similarity

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    """Entities enriched with references, plus the references left over."""

    entities: list[CanonicalEntity] = field(default_factory=list)
    unlinked: list[Mention] = field(default_factory=list)

    @property
    def linked(self) -> list[CanonicalEntity]:
        return [e for e in self.entities if e.references]


@dataclass
class LinkingConfig:
    """Configuration for reference linking."""

    link_threshold: float = field(default_factory=lambda: settings.link_threshold)
    standalone_multiplier: float = 0.6


class ReferenceLinker:
    """Links REFERENCE mentions to canonical entities of the same category."""

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        similarity: SimilarityFunction = clinical_similarity,
        config: LinkingConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.similarity = similarity
        self.config = config or LinkingConfig()

    def score(self, reference: Mention, entity: CanonicalEntity) -> float:
        """Score a reference against an entity; absent fields score 0."""
        if reference is None or entity is None:
            return 0.0
        if not reference.name or not entity.canonical_name:
            return 0.0
        if reference.category is None or entity.category is None:
            return 0.0
        if reference.category != entity.category:
            return 0.0
        # A dated reference points at an event on that day only
        if reference.date is not None and entity.date is not None and reference.date != entity.date:
            return 0.0
        if reference.value != entity.value:
            return 0.0
        synonyms = self.knowledge_base.synonym_groups(entity.category)
        best = self.similarity(reference.name, entity.canonical_name, synonyms)
        for mention in entity.source_mentions:
            best = max(best, self.similarity(reference.name, mention.name, synonyms))
        return best

    def link(
        self,
        references: Iterable[Mention],
        entities: Iterable[CanonicalEntity],
    ) -> LinkResult:
        """Attach references to their best-matching entities.

        Args:
            references: REFERENCE mentions (NEW_EVENT mentions are ignored).
            entities: Canonical entities from deduplication; not mutated.

        Returns:
            LinkResult with copied entities and the unlinked references.
        """
        linked_entities = [replace(e, references=list(e.references)) for e in entities]
        unlinked: list[Mention] = []

        for reference in references:
            if reference is None or not reference.is_reference:
                continue
            best_entity: CanonicalEntity | None = None
            best_score = 0.0
            for entity in linked_entities:
                score = self.score(reference, entity)
                if score > best_score:
                    best_entity, best_score = entity, score

            if best_entity is not None and best_score >= self.config.link_threshold:
                best_entity.references.append(reference)
                logger.debug(
                    f"Linked reference '{reference.raw_span}' to {best_entity.id} "
                    f"(score {best_score:.2f})"
                )
            else:
                unlinked.append(reference)

        result = LinkResult(entities=linked_entities, unlinked=unlinked)
        logger.debug(
            f"Reference linking: {sum(len(e.references) for e in result.linked)} linked, "
            f"{len(unlinked)} unlinked"
        )
        return result

    def _promoted_match(
        self, mention: Mention, promoted: list[CanonicalEntity]
    ) -> CanonicalEntity | None:
        best_entity: CanonicalEntity | None = None
        best_score = 0.0
        for entity in promoted:
            if entity.date != mention.date:
                continue
            score = self.score(mention, entity)
            if score > best_score:
                best_entity, best_score = entity, score
        if best_score >= self.config.link_threshold:
            return best_entity
        return None

    def promote_unlinked(
        self,
        unlinked: Iterable[Mention],
        existing: Iterable[CanonicalEntity] = (),
    ) -> list[CanonicalEntity]:
        """Turn unlinked references into standalone low-confidence entities.

        References naming the same thing on the same day (or both undated)
        become one entity with several source mentions.
        """
        issued = list(existing)
        promoted: list[CanonicalEntity] = []
        for mention in unlinked:
            match = self._promoted_match(mention, promoted)
            if match is not None:
                match.source_mentions.append(mention)
                match.confidence = max(
                    match.confidence,
                    max(0.0, min(1.0, mention.confidence * self.config.standalone_multiplier)),
                )
                continue
            number = next_entity_number(issued + promoted, mention.category)
            promoted.append(CanonicalEntity(
                id=make_entity_id(mention.category, number),
                category=mention.category,
                canonical_name=mention.name,
                confidence=max(0.0, min(1.0, mention.confidence * self.config.standalone_multiplier)),
                date=mention.date,
                source_mentions=[mention],
                value=mention.value,
                scale=mention.scale,
                is_standalone_reference=True,
                position=mention.position,
            ))
        return promoted


# Singleton instance
_reference_linker: ReferenceLinker | None = None


def get_reference_linker() -> ReferenceLinker:
    """Get the singleton reference linker."""
    global _reference_linker
    if _reference_linker is None:
        _reference_linker = ReferenceLinker()
    return _reference_linker


def reset_reference_linker() -> None:
    """Reset the singleton reference linker (mainly for testing)."""
    global _reference_linker
    _reference_linker = None
