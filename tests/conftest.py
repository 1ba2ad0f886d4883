"""Shared fixtures for the ListingMatch test suite.

Everything runs against a file-backed SQLite database (aiosqlite) created
fresh per test, a deterministic bag-of-words embedder and an in-memory media
store serving Pillow-generated images, so no model download or network access
is needed.
"""

from __future__ import annotations

import struct
import zlib
from collections.abc import AsyncIterator, Callable
from io import BytesIO
from unittest.mock import AsyncMock

import pytest
from PIL import Image, ImageDraw

from listingmatch.db.models import Base
from listingmatch.db.repository import DetectionRepository
from listingmatch.db.session import build_engine, build_session_factory
from listingmatch.dedup.normalize import normalize_text
from listingmatch.dedup.pipeline import DuplicateDetectionService
from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.records import PropertyRecord
from listingmatch.dedup.semantic_stage import SemanticScorer
from listingmatch.dedup.visual_stage import VisualScorer
from listingmatch.errors import SignalUnavailable
from listingmatch.media.decoder import PillowDecoder
from listingmatch.pipeline.embedder import EmbeddingProvider
from listingmatch.security.rbac import Authorizer

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class BagOfWordsEmbedder(EmbeddingProvider):
    """Deterministic embedder: token counts hashed into a fixed number of buckets.

    Identical normalized texts give identical vectors (cosine 1.0); texts
    with disjoint vocabularies are nearly orthogonal.
    """

    def __init__(self, dims: int = 256) -> None:
        self._dims = dims
        self.calls: list[list[str]] = []

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vector = [0.0] * self._dims
            for token in normalize_text(text).split():
                vector[zlib.crc32(token.encode()) % self._dims] += 1.0
            vectors.append(vector)
        return vectors

    @property
    def model_id(self) -> str:
        return "test/bag-of-words"

    @property
    def dimensions(self) -> int:
        return self._dims


class FailingEmbedder(BagOfWordsEmbedder):
    """Embedder whose every call raises, counting the attempts."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        raise RuntimeError("inference backend unavailable")


class StaticAuthorizer(Authorizer):
    """Grants exactly the (actor, action) pairs it was built with."""

    def __init__(self, grants: dict[str, set[str]] | None = None) -> None:
        self._grants = grants or {}

    async def is_authorized(self, actor_id: str | None, action: str) -> bool:
        return bool(actor_id) and action in self._grants.get(actor_id, set())


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------


def make_image_bytes(color: tuple[int, int, int] = (135, 206, 235), fmt: str = "PNG") -> bytes:
    """A solid-colour 100x100 image."""
    img = Image.new("RGB", (100, 100), color)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_gradient_bytes(fmt: str = "PNG") -> bytes:
    """A horizontal gradient: every pixel darker than its left neighbour."""
    img = Image.new("L", (100, 100))
    img.putdata([255 - int(x * 2.5) for _y in range(100) for x in range(100)])
    buf = BytesIO()
    img.convert("RGB").save(buf, format=fmt)
    return buf.getvalue()


def make_checkerboard_bytes(fmt: str = "PNG") -> bytes:
    img = Image.new("RGB", (100, 100), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    for x in range(0, 100, 10):
        for y in range(0, 100, 10):
            if (x + y) % 20 == 0:
                draw.rectangle([x, y, x + 10, y + 10], fill=(0, 0, 0))
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_oversized_png_bytes(width: int = 40000, height: int = 40000) -> bytes:
    """A tiny PNG whose header claims *width* x *height* pixels."""
    data = bytearray(make_image_bytes())
    # IHDR payload follows the 8-byte signature and the chunk length/type
    data[16:24] = struct.pack(">II", width, height)
    data[29:33] = struct.pack(">I", zlib.crc32(bytes(data[12:29])))
    return bytes(data)


def make_fetcher(images: dict[str, bytes]) -> AsyncMock:
    """Fetcher double serving *images* by URL; unknown URLs are unavailable."""

    async def _fetch(url: str) -> bytes:
        if url not in images:
            raise SignalUnavailable(f"HTTP 404 for {url}")
        return images[url]

    fetcher = AsyncMock()
    fetcher.fetch = AsyncMock(side_effect=_fetch)
    fetcher.aclose = AsyncMock()
    return fetcher


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def make_record(record_id: str, owner_id: str | None = None, **overrides) -> PropertyRecord:
    """A fully populated listing; override any field by keyword."""
    fields = {
        "title": "Bright two bedroom flat near the park",
        "description": "Renovated kitchen, large balcony, quiet street, close to the underground",
        "street_number": "12",
        "street_name": "Linden Avenue",
        "city": "Berlin",
        "zip_code": "10117",
        "monthly_rent": 1450.0,
        "square_meters": 68.0,
        "bedrooms": 2,
        "bathrooms": 1.0,
    }
    fields.update(overrides)
    return PropertyRecord(id=record_id, owner_id=owner_id or f"owner-{record_id}", **fields)


def distinct_record(index: int, **overrides) -> PropertyRecord:
    """A listing whose text shares no vocabulary with any other index."""

    def words(slot: str, count: int) -> str:
        return " ".join(f"{zlib.crc32(f'{index}-{slot}-{k}'.encode()):08x}" for k in range(count))

    fields = {
        "title": words("title", 4),
        "description": words("description", 10),
        "street_number": str(index + 1),
        "street_name": words("street", 2),
        "city": words("city", 1),
        "zip_code": f"{10000 + index * 37}",
        "monthly_rent": 500.0 + index * 120,
        "square_meters": 20.0 + index * 7,
    }
    fields.update(overrides)
    return PropertyRecord(id=f"rec-{index:03d}", owner_id=f"owner-{index:03d}", **fields)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def profile() -> WeightProfile:
    return WeightProfile()


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator:
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def repository(engine) -> DetectionRepository:
    return DetectionRepository(build_session_factory(engine))


@pytest.fixture
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()


@pytest.fixture
def authorizer() -> StaticAuthorizer:
    return StaticAuthorizer(
        {
            "moderator": {"duplicates:scan", "duplicates:resolve", "duplicates:stats"},
            "viewer": {"duplicates:stats"},
        }
    )


@pytest.fixture
def make_service(repository, embedder, authorizer, profile) -> Callable[..., DuplicateDetectionService]:
    """Factory building a service over the test repository with swappable collaborators."""

    def _build(
        *,
        embedder_override: EmbeddingProvider | None = None,
        images: dict[str, bytes] | None = None,
        fetcher=None,
        authorizer_override: Authorizer | None = None,
        pool_limit: int = 500,
        chunk_size: int = 1000,
    ) -> DuplicateDetectionService:
        semantic = SemanticScorer(embedder_override or embedder, profile, timeout_seconds=5.0, max_in_flight=1)
        visual = VisualScorer(
            fetcher or make_fetcher(images or {}),
            PillowDecoder(),
            repository,
            max_in_flight=1,
        )
        return DuplicateDetectionService(
            repository,
            semantic,
            visual,
            authorizer_override or authorizer,
            profile,
            pool_limit=pool_limit,
            chunk_size=chunk_size,
        )

    return _build
