"""
Embedding model abstraction layer for ListingMatch.

Provides an abstract EmbeddingProvider interface so the embedding backend can be
swapped without modifying callers.  Two implementations ship:

- SentenceTransformerProvider: loads a sentence-transformers model in-process
  (default all-MiniLM-L6-v2, 384 dimensions).
- HttpEmbeddingProvider: calls an external inference service over HTTP.

Design decisions:
- Providers are plain objects constructed by the hosting process (see
  listingmatch.bootstrap.build_embedder) and injected into the detection
  service.  There is no module-level singleton; the process owns the lifecycle.
- Providers are synchronous.  The semantic stage runs them in a worker thread
  under an explicit timeout, so a slow model or service never blocks the loop.
- normalize_embeddings=True yields unit-length vectors, so cosine similarity
  reduces to a dot product.

Exports: EmbeddingProvider, SentenceTransformerProvider, HttpEmbeddingProvider
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """Abstract interface for embedding model providers.

    Implementors must:
    - Embed a single text string to a list of floats
    - Embed a batch of texts efficiently
    - Expose model_id (e.g. "sentence-transformers/all-MiniLM-L6-v2")
    - Expose dimensions (vector size, e.g. 384)

    Any failure (model error, HTTP error, malformed response) is raised to the
    caller; the semantic stage converts it into an unavailable signal.
    """

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed a single text and return a float vector."""
        ...

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts and return one float vector per text."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Fully-qualified model identifier."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Embedding vector dimensionality, or 0 when not known up front."""
        ...

    def close(self) -> None:
        """Release held resources.  The default implementation holds none."""


# ---------------------------------------------------------------------------
# SentenceTransformer implementation
# ---------------------------------------------------------------------------


class SentenceTransformerProvider(EmbeddingProvider):
    """EmbeddingProvider backed by sentence-transformers.

    Args:
        model_name: HuggingFace model identifier. Defaults to
            "sentence-transformers/all-MiniLM-L6-v2" (384 dims, 22 MB).

    The model is loaded once, on first use, so CLI commands that never embed
    do not pay for it.  The server warms it up in its lifespan by reading
    ``dimensions``.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
    ) -> None:
        self._model_name = model_name
        self._model = None
        self._dimensions = 0

    def _get_model(self):
        if self._model is None:
            # Deferred so that importing this module does not pull in torch
            from sentence_transformers import SentenceTransformer  # noqa: PLC0415

            self._model = SentenceTransformer(self._model_name)
            # Detect dimensions from the loaded model rather than hardcoding
            self._dimensions = self._model.get_sentence_embedding_dimension()
            logger.info("Loaded embedding model %s (%d dims)", self._model_name, self._dimensions)
        return self._model

    def embed(self, text: str) -> list[float]:
        return self._get_model().encode(text, normalize_embeddings=True).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts in a single model forward pass."""
        return [e.tolist() for e in self._get_model().encode(texts, normalize_embeddings=True)]

    @property
    def model_id(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        self._get_model()
        return self._dimensions


# ---------------------------------------------------------------------------
# HTTP inference service implementation
# ---------------------------------------------------------------------------


class HttpEmbeddingProvider(EmbeddingProvider):
    """EmbeddingProvider that delegates to an external inference service.

    The service contract is a single JSON endpoint:

        POST <base_url>
        {"model": "<model id>", "input": ["text", ...]}
        -> {"embeddings": [[float, ...], ...]}

    Args:
        base_url:        Endpoint URL of the inference service.
        model_name:      Model identifier forwarded in the request body.
        timeout_seconds: Per-request timeout.
        client:          Optional pre-built httpx.Client (tests inject one
                         with a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url
        self._model_name = model_name
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._dimensions = 0

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """POST the texts to the inference service.

        Raises:
            httpx.HTTPError: Transport failure or non-2xx response.
            ValueError: Response body does not carry one vector per input.
        """
        response = self._client.post(
            self._base_url,
            json={"model": self._model_name, "input": texts},
        )
        response.raise_for_status()
        vectors = response.json().get("embeddings")
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise ValueError(
                f"embedding service returned {0 if not isinstance(vectors, list) else len(vectors)} "
                f"vectors for {len(texts)} inputs"
            )
        result = [[float(x) for x in vector] for vector in vectors]
        if result and result[0]:
            self._dimensions = len(result[0])
        return result

    @property
    def model_id(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def close(self) -> None:
        self._client.close()
