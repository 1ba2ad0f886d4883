"""ListingMatch HTTP server entry point.

Lifespan builds the Runtime (database engine, embedding provider, media
fetcher, Casbin enforcer, detection service) once at startup so the first
request is not penalised with a model load, stores the service on
``app.state`` and closes everything on shutdown.

Entry point:
    uvicorn listingmatch.server.main:app --host 0.0.0.0 --port 8000

Or run directly:
    python -m listingmatch.server.main
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from listingmatch import __version__
from listingmatch.api.router import api_router, install_error_handlers
from listingmatch.bootstrap import configure_logging, open_runtime
from listingmatch.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: build the runtime, expose the service, tear down on exit
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: configure logging, build the runtime.  Shutdown: close it."""
    configure_logging(settings.log_level)
    logger.info("ListingMatch server starting up...")

    async with open_runtime(settings) as runtime:
        app.state.service = runtime.service
        # Reading dimensions forces the embedding model to load now
        logger.info(
            "Detection service ready (embedding model %s, %d dims, pool limit %d)",
            runtime.embedder.model_id,
            runtime.embedder.dimensions,
            settings.candidate_pool_limit,
        )
        yield
        logger.info("ListingMatch server shutting down...")
        app.state.service = None


# ---------------------------------------------------------------------------
# Clean operation IDs for client generation
# ---------------------------------------------------------------------------


def custom_generate_unique_id(route: APIRoute) -> str:
    """Generate deterministic, client-friendly operation IDs for REST routes."""
    if route.tags:
        return f"{route.tags[0]}-{route.name}"
    return route.name


def create_app(app_lifespan: Callable | None = lifespan) -> FastAPI:
    """Build the FastAPI app.  Tests pass ``app_lifespan=None`` and override deps."""
    application = FastAPI(
        title="ListingMatch",
        description="Duplicate detection for property listings",
        version=__version__,
        lifespan=app_lifespan,
        generate_unique_id_function=custom_generate_unique_id,
    )

    @application.get("/health")
    async def health() -> JSONResponse:
        """Simple health check endpoint for load balancers and readiness probes."""
        return JSONResponse({"status": "ok", "service": "listingmatch"})

    # Mounted AFTER /health so it does not shadow the health endpoint.
    application.include_router(api_router)
    install_error_handlers(application)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn  # noqa: PLC0415

    uvicorn.run("listingmatch.server.main:app", host="0.0.0.0", port=8000)
