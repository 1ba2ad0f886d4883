"""Semantic signal: embedding cosine similarity with per-cycle bookkeeping.

Embedding cost must stay O(n) per scan cycle while the cosine comparison is
O(n^2), so all embedding calls happen up front in ``ensure_embeddings`` and
``score`` only reads vectors already on the records.

Three vectors are cached on each PropertyRecord and persisted by the
orchestrator: the combined text (title + description + address), the title
and the description.  Only missing vectors are computed, so a stored record
costs no embedding call at all.

The pair score is the higher of the combined cosine and the blended per-field
cosine (title_share * title + (1 - title_share) * description).

Graceful degradation: an embedding failure or timeout leaves the missing
vectors empty, which makes every cosine involving them 0.  The failure is
logged and tallied but never raised, and a record that failed once is not
retried within the same cycle.

Provider calls run on a dedicated thread pool sized ``max_in_flight``.  A
timed-out call keeps its worker until the provider returns, so abandoned
calls can never push the number of running inferences past that limit.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from listingmatch.dedup.normalize import combined_text, normalize_text
from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.records import PropertyRecord
from listingmatch.pipeline.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: list[float] | None, vec_b: list[float] | None) -> float:
    """Cosine similarity clamped to [0, 1]; 0 for empty or zero-magnitude vectors."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(min(1.0, max(0.0, float(np.dot(a, b)) / norm)))


@dataclass
class EmbeddingCache:
    """Per-cycle embedding state shared by every pair in one scan or evaluation."""

    attempted: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    newly_embedded: list[PropertyRecord] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return len(self.failed)


class SemanticScorer:
    """Computes missing embeddings, then scores pairs by cosine similarity.

    Args:
        embedder:        Injected EmbeddingProvider (synchronous).
        profile:         Weight profile supplying the per-field blend.
        timeout_seconds: Upper bound on one embedding call.
        max_in_flight:   Provider calls allowed to run at once.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        profile: WeightProfile,
        timeout_seconds: float = 10.0,
        max_in_flight: int = 4,
    ) -> None:
        self._embedder = embedder
        self._profile = profile
        self._timeout = timeout_seconds
        self._max_in_flight = max(1, max_in_flight)
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_in_flight, thread_name_prefix="embedding"
        )

    def close(self) -> None:
        """Stop the worker pool; queued calls are cancelled."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed_texts(self, texts: list[str]) -> list[list[float]] | None:
        """Embed *texts* in one call, or return None if the collaborator failed.

        The timeout covers waiting for a free worker as well as the call
        itself; either way a timeout counts as an unavailable signal.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._embedder.embed_batch, texts),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Embedding call timed out after %.1fs", self._timeout)
        except Exception as exc:
            logger.warning("Embedding call failed: %s", exc)
        return None

    async def embed_text(self, text: str) -> list[float]:
        """Embed one text; returns an empty vector for blank input or on failure."""
        if not normalize_text(text):
            return []
        vectors = await self.embed_texts([text])
        return vectors[0] if vectors else []

    async def ensure_embeddings(
        self,
        records: list[PropertyRecord],
        cache: EmbeddingCache,
    ) -> EmbeddingCache:
        """Make sure every record has been attempted once in this cycle.

        Missing vectors are computed in one batch call per record and
        assigned to the record; records that gained a vector are listed in
        ``cache.newly_embedded`` so the caller can persist them.  Records
        with every vector in place cost nothing.
        """
        pending = [r for r in records if r.id not in cache.attempted]
        for record in pending:
            cache.attempted.add(record.id)
        await asyncio.gather(*(self._embed_record(r, cache) for r in pending))
        return cache

    async def _embed_record(self, record: PropertyRecord, cache: EmbeddingCache) -> None:
        texts: list[str] = []
        slots: list[str] = []
        if not record.embedding:
            text = combined_text(record)
            if text:
                texts.append(text)
                slots.append("embedding")
        for slot, value in (
            ("title_embedding", record.title),
            ("description_embedding", record.description),
        ):
            if not getattr(record, slot) and normalize_text(value):
                texts.append(value)
                slots.append(slot)

        if not texts:
            return

        vectors = await self.embed_texts(texts)
        if vectors is None or len(vectors) != len(texts):
            cache.failed.add(record.id)
            logger.warning("Semantic signal unavailable for record %s", record.id)
            return

        for slot, vector in zip(slots, vectors):
            setattr(record, slot, list(vector))
        cache.newly_embedded.append(record)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, record_a: PropertyRecord, record_b: PropertyRecord) -> float:
        """Semantic similarity in [0, 1] from vectors already on the records."""
        combined = cosine_similarity(record_a.embedding, record_b.embedding)
        title = cosine_similarity(record_a.title_embedding, record_b.title_embedding)
        description = cosine_similarity(
            record_a.description_embedding, record_b.description_embedding
        )
        share = self._profile.semantic_title_share
        per_field = share * title + (1.0 - share) * description

        return min(1.0, max(combined, per_field))
