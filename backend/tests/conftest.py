"""Pytest configuration and fixtures for backend tests."""

from collections.abc import AsyncGenerator, Iterator
from datetime import date

import pytest
from httpx import ASGITransport, AsyncClient

from clinical_timeline.main import app
from clinical_timeline.services import (
    reset_deduplicator,
    reset_entity_extractor,
    reset_knowledge_base,
    reset_negation_classifier,
    reset_pipeline,
    reset_reference_linker,
    reset_temporal_resolver,
    reset_timeline_builder,
    reset_trajectory_analyzer,
    reset_treatment_tracker,
)
from clinical_timeline.services.knowledge_base import ClinicalKnowledgeBase, build_default_knowledge_base
from clinical_timeline.services.temporal_context import ReferenceDates


@pytest.fixture(autouse=True)
def reset_singletons() -> Iterator[None]:
    """Reset every service singleton around each test."""
    yield
    reset_pipeline()
    reset_entity_extractor()
    reset_deduplicator()
    reset_reference_linker()
    reset_timeline_builder()
    reset_treatment_tracker()
    reset_trajectory_analyzer()
    reset_temporal_resolver()
    reset_negation_classifier()
    reset_knowledge_base()


@pytest.fixture(scope="session")
def knowledge_base() -> ClinicalKnowledgeBase:
    """Default knowledge base, built once per session (it is immutable)."""
    return build_default_knowledge_base()


@pytest.fixture
def reference_dates() -> ReferenceDates:
    """Anchor dates of a typical SAH admission."""
    return ReferenceDates(
        ictus=date(2024, 3, 1),
        admission=date(2024, 3, 1),
        first_procedure=date(2024, 3, 2),
        discharge=date(2024, 3, 20),
    )


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
