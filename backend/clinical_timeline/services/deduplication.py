"""Semantic deduplication of NEW_EVENT mentions into canonical entities.

Two mentions of one category merge iff their similarity reaches the
merge threshold AND they fall on the same day (or are both undated).
Mentions with different resolved dates never merge, even with identical
names. Merging repeats over the produced clusters until no two output
entities are both similar and date-coincident.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable

from clinical_timeline.core.config import settings
from clinical_timeline.schemas.base import EntityCategory
from clinical_timeline.services.entity_extraction import Mention
from clinical_timeline.services.knowledge_base import ClinicalKnowledgeBase, get_knowledge_base
from clinical_timeline.services.similarity import (
    SimilarityFunction,
    canonical_term,
    clinical_similarity,
)

logger = logging.getLogger(__name__)


@dataclass
class CanonicalEntity:
    """A deduplicated clinical fact built from one or more mentions."""

    id: str
    category: EntityCategory
    canonical_name: str
    confidence: float
    date: datetime.date | None = None
    source_mentions: list[Mention] = field(default_factory=list)
    references: list[Mention] = field(default_factory=list)
    value: float | None = None
    scale: str | None = None
    is_standalone_reference: bool = False
    position: tuple[int, int] = (0, 0)

    @property
    def context(self) -> str:
        """Sentence context of the earliest source mention."""
        mentions = self.source_mentions or self.references
        return mentions[0].context if mentions else ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "canonical_name": self.canonical_name,
            "date": self.date.isoformat() if self.date else None,
            "confidence": round(self.confidence, 3),
            "source_mentions": [m.raw_span for m in self.source_mentions],
            "references": [m.raw_span for m in self.references],
            "value": self.value,
            "scale": self.scale,
            "is_standalone_reference": self.is_standalone_reference,
        }


@dataclass
class DeduplicationConfig:
    """Configuration for semantic deduplication."""

    merge_threshold: float = field(default_factory=lambda: settings.merge_threshold)


def make_entity_id(category: EntityCategory, number: int) -> str:
    return f"{category.value}-{number:03d}"


def next_entity_number(entities: Iterable[CanonicalEntity], category: EntityCategory) -> int:
    """Next free id number for a category, given already issued entities."""
    prefix = f"{category.value}-"
    numbers = [
        int(e.id[len(prefix):])
        for e in entities
        if e.id.startswith(prefix) and e.id[len(prefix):].isdigit()
    ]
    return max(numbers, default=0) + 1


class SemanticDeduplicator:
    """Merges near-duplicate mentions into CanonicalEntity objects."""

    def __init__(
        self,
        knowledge_base: ClinicalKnowledgeBase | None = None,
        similarity: SimilarityFunction = clinical_similarity,
        config: DeduplicationConfig | None = None,
    ):
        self.knowledge_base = knowledge_base or get_knowledge_base()
        self.similarity = similarity
        self.config = config or DeduplicationConfig()

    def _compatible(self, a: Mention, b: Mention) -> bool:
        """Same day (or both undated) and, for scores, the same reading."""
        if a.date != b.date:
            return False
        if a.scale != b.scale or a.value != b.value:
            return False
        return True

    def _canonical_name(self, cluster: list[Mention]) -> str:
        synonyms = self.knowledge_base.synonym_groups(cluster[0].category)
        for mention in cluster:
            preferred = canonical_term(mention.name, synonyms)
            if preferred is not None:
                return preferred
        best = max(cluster, key=lambda m: m.confidence)
        return best.name

    def _cluster_score(self, a: list[Mention], b: list[Mention]) -> float:
        synonyms = self.knowledge_base.synonym_groups(a[0].category)
        return max(
            self.similarity(x.name, y.name, synonyms)
            for x in a
            for y in b
        )

    def _merge_category(self, mentions: list[Mention]) -> list[list[Mention]]:
        synonyms = self.knowledge_base.synonym_groups(mentions[0].category)
        threshold = self.config.merge_threshold

        clusters: list[list[Mention]] = []
        for mention in mentions:
            best_index = None
            best_score = 0.0
            for index, cluster in enumerate(clusters):
                if not self._compatible(mention, cluster[0]):
                    continue
                score = max(self.similarity(mention.name, m.name, synonyms) for m in cluster)
                if score >= threshold and score > best_score:
                    best_index, best_score = index, score
            if best_index is None:
                clusters.append([mention])
            else:
                clusters[best_index].append(mention)

        # Re-check clusters against each other until stable
        merged = True
        while merged:
            merged = False
            for i in range(len(clusters)):
                for j in range(i + 1, len(clusters)):
                    a, b = clusters[i], clusters[j]
                    if not self._compatible(a[0], b[0]):
                        continue
                    name_score = self.similarity(
                        self._canonical_name(a), self._canonical_name(b), synonyms
                    )
                    if max(name_score, self._cluster_score(a, b)) >= threshold:
                        clusters[i] = a + b
                        del clusters[j]
                        merged = True
                        break
                if merged:
                    break
        return clusters

    def deduplicate(self, mentions: Iterable[Mention]) -> list[CanonicalEntity]:
        """Merge NEW_EVENT mentions into canonical entities.

        Args:
            mentions: Extracted mentions; REFERENCE mentions are ignored.

        Returns:
            Canonical entities ordered by category, then narrative position.
        """
        by_category: dict[EntityCategory, list[Mention]] = {}
        for mention in mentions:
            if mention.is_reference or not mention.name:
                continue
            by_category.setdefault(mention.category, []).append(mention)

        entities: list[CanonicalEntity] = []
        for category in EntityCategory:
            category_mentions = sorted(by_category.get(category, []), key=lambda m: m.position)
            if not category_mentions:
                continue
            clusters = self._merge_category(category_mentions)
            clusters.sort(key=lambda c: min(m.position for m in c))
            for number, cluster in enumerate(clusters, start=1):
                cluster.sort(key=lambda m: m.position)
                entities.append(CanonicalEntity(
                    id=make_entity_id(category, number),
                    category=category,
                    canonical_name=self._canonical_name(cluster),
                    confidence=max(m.confidence for m in cluster),
                    date=cluster[0].date,
                    source_mentions=list(cluster),
                    value=cluster[0].value,
                    scale=cluster[0].scale,
                    position=cluster[0].position,
                ))
            logger.debug(
                f"Deduplicated {len(category_mentions)} {category.value} mentions "
                f"into {len(clusters)} entities"
            )

        return entities


# Singleton instance
_deduplicator: SemanticDeduplicator | None = None


def get_deduplicator() -> SemanticDeduplicator:
    """Get the singleton semantic deduplicator."""
    global _deduplicator
    if _deduplicator is None:
        _deduplicator = SemanticDeduplicator()
    return _deduplicator


def reset_deduplicator() -> None:
    """Reset the singleton semantic deduplicator (mainly for testing)."""
    global _deduplicator
    _deduplicator = None
