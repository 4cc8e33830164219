"""API routers for the Clinical Timeline Engine."""

from clinical_timeline.api.pipeline import router as pipeline_router

__all__ = [
    "pipeline_router",
]
