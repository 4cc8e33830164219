"""FastAPI application for the Clinical Timeline Engine."""

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinical_timeline import __version__
from clinical_timeline.api import pipeline_router
from clinical_timeline.core.config import settings
from clinical_timeline.services.knowledge_base import get_knowledge_base
from clinical_timeline.services.pipeline import get_pipeline

logger = logging.getLogger(__name__)


def prewarm_pipeline() -> dict[str, Any]:
    """Build the knowledge base and pipeline singletons before serving.

    Returns:
        Knowledge base stats and the time spent building.
    """
    start_time = time.perf_counter()
    kb_stats = get_knowledge_base().get_stats()
    extractor_stats = get_pipeline().extractor.get_stats()
    return {
        "knowledge_base": kb_stats,
        "extractor": extractor_stats,
        "prewarm_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Startup builds the pattern automaton once so the first request is
    not slowed by it. There is nothing to release on shutdown.
    """
    prewarm_stats = prewarm_pipeline()
    logger.info(
        f"Pipeline pre-warmed: {prewarm_stats['extractor']['keyword_count']} keywords, "
        f"{prewarm_stats['extractor']['regex_count']} regex patterns "
        f"in {prewarm_stats['prewarm_time_ms']}ms"
    )
    app.state.prewarm_stats = prewarm_stats

    yield


app = FastAPI(
    title=settings.app_name,
    description="API for turning free-text clinical notes into deduplicated entities, "
    "a causal event timeline, treatment responses and functional trajectories.",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(pipeline_router, prefix=settings.api_v1_prefix)


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint (liveness probe)."""
    return {
        "status": "healthy",
        "service": "clinical-timeline-engine",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, Any]:
    """Readiness check endpoint.

    Reports the knowledge base the pipeline was built from.
    """
    prewarm_stats = getattr(app.state, "prewarm_stats", None) or prewarm_pipeline()
    return {
        "status": "ready",
        "service": "clinical-timeline-engine",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        **prewarm_stats,
    }


@app.get("/", tags=["Health"])
async def root() -> dict[str, str]:
    """Root endpoint with API info."""
    return {
        "service": "Clinical Timeline Engine API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }
