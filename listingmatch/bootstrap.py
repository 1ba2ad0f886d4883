"""Explicit construction of the detection service and its collaborators.

The hosting process (the FastAPI lifespan or a CLI command) builds exactly one
Runtime, uses it, and closes it.  Nothing expensive is created at import time
and nothing lives in module globals: the embedding model, HTTP clients,
database engine and Casbin enforcer are all owned by the Runtime.

Usage:
    async with open_runtime() as runtime:
        summary = await runtime.service.trigger_full_scan(actor_id)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine

from listingmatch.config import Settings
from listingmatch.db.repository import DetectionRepository
from listingmatch.db.session import build_engine, build_session_factory
from listingmatch.dedup.pipeline import DuplicateDetectionService
from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.semantic_stage import SemanticScorer
from listingmatch.dedup.visual_stage import VisualScorer
from listingmatch.media.decoder import ImageDecoder, PillowDecoder
from listingmatch.media.fetcher import MediaFetcher
from listingmatch.pipeline.embedder import (
    EmbeddingProvider,
    HttpEmbeddingProvider,
    SentenceTransformerProvider,
)
from listingmatch.security.rbac import Authorizer, CasbinAuthorizer

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one hosting process needs, with a single close point."""

    settings: Settings
    engine: AsyncEngine
    repository: DetectionRepository
    service: DuplicateDetectionService
    authorizer: Authorizer
    embedder: EmbeddingProvider
    semantic: SemanticScorer
    fetcher: MediaFetcher

    async def aclose(self) -> None:
        await self.fetcher.aclose()
        self.semantic.close()
        self.embedder.close()
        await self.engine.dispose()
        logger.info("Runtime closed")


def build_embedder(settings: Settings) -> EmbeddingProvider:
    """HTTP provider when an inference service URL is configured, else a local model."""
    if settings.embedding_service_url:
        logger.info("Using embedding service at %s", settings.embedding_service_url)
        return HttpEmbeddingProvider(
            settings.embedding_service_url,
            model_name=settings.embedding_model,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    return SentenceTransformerProvider(settings.embedding_model)


async def build_runtime(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    embedder: EmbeddingProvider | None = None,
    authorizer: Authorizer | None = None,
    fetcher: MediaFetcher | None = None,
    decoder: ImageDecoder | None = None,
) -> Runtime:
    """Construct the full object graph.  Keyword overrides are for tests and embedding hosts."""
    if settings is None:
        from listingmatch.config import settings  # noqa: PLC0415

    engine = engine or build_engine(settings.database_url)
    repository = DetectionRepository(build_session_factory(engine))
    profile = WeightProfile.from_settings(settings)

    embedder = embedder or build_embedder(settings)
    fetcher = fetcher or MediaFetcher(
        timeout_seconds=settings.media_fetch_timeout_seconds,
        max_bytes=settings.media_max_bytes,
    )
    authorizer = authorizer or await CasbinAuthorizer.create(engine, domain=settings.rbac_domain)

    semantic = SemanticScorer(
        embedder,
        profile,
        timeout_seconds=settings.embedding_timeout_seconds,
        max_in_flight=settings.max_in_flight,
    )
    visual = VisualScorer(
        fetcher,
        decoder or PillowDecoder(),
        repository,
        grid_size=settings.hash_grid_size,
        max_in_flight=settings.max_in_flight,
    )
    service = DuplicateDetectionService(
        repository,
        semantic,
        visual,
        authorizer,
        profile,
        pool_limit=settings.candidate_pool_limit,
        chunk_size=settings.scan_chunk_size,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        repository=repository,
        service=service,
        authorizer=authorizer,
        embedder=embedder,
        semantic=semantic,
        fetcher=fetcher,
    )


@asynccontextmanager
async def open_runtime(settings: Settings | None = None, **overrides) -> AsyncIterator[Runtime]:
    runtime = await build_runtime(settings, **overrides)
    try:
        yield runtime
    finally:
        await runtime.aclose()


def configure_logging(level: str) -> None:
    """Configure the root logger once for a hosting process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
