# =============================================================================
# FastAPI Application — Research Workflow Engine
# =============================================================================
#
# Run locally:
#   uvicorn thesis_validator.main:app --reload
#
# Workers (separate process):
#   celery -A thesis_validator.workers.celery_app worker --loglevel=info
#
# Stale-job reaper (one per deployment):
#   celery -A thesis_validator.workers.celery_app beat --loglevel=info
# =============================================================================

import logging

from fastapi import FastAPI

from thesis_validator.api.research import router as research_router
from thesis_validator.config import configure_logging, settings
from thesis_validator.models.responses import HealthResponse

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Investment-thesis diligence: decomposes a thesis into a hypothesis "
            "tree, gathers and scores evidence, hunts contradictions and "
            "synthesizes a verdict."
        ),
        debug=settings.debug,
    )
    app.include_router(research_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    logger.info("%s v%s ready", settings.app_name, settings.app_version)
    return app


app = create_app()
