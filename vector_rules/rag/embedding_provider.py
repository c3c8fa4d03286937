"""
Embedding provider abstraction with a deterministic mock backend.

Every provider honours the same contract: the same text always yields the
same vector, vectors have a fixed dimension, and they are normalized to unit
Euclidean length. The mock provider is a placeholder until a model-backed
provider is configured.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import math
from abc import ABC, abstractmethod

import numpy as np

from vector_rules.errors import (
    DimensionMismatch,
    EmbeddingFailed,
    InvalidInput,
)

LOG = logging.getLogger("rag.embedding_provider")

# OpenAI ada-002 width
DEFAULT_DIMENSION = 1536


def _require_text(text: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("text cannot be empty")


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Convert one non-empty text into a unit-length vector."""
        ...

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Returns one vector per input text, in input order. Either every text
        is embedded or the whole call fails with the index of the first text
        that could not be embedded.
        """
        if not texts:
            raise InvalidInput("texts cannot be empty")

        vectors: list[list[float]] = []
        for i, text in enumerate(texts):
            try:
                vectors.append(self.embed(text))
            except Exception as exc:
                raise EmbeddingFailed(
                    f"failed to generate embedding for text {i}: {exc}", index=i
                ) from exc
        return vectors


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic hash-seeded embedding provider.

    The lower-cased text is hashed with SHA-256 and the digest seeds a private
    numpy generator that draws ``dim`` values uniformly in [-1, 1]. The result
    is normalized to unit length. No RNG state is shared between calls.
    """

    def __init__(self, dim: int = DEFAULT_DIMENSION) -> None:
        self._dim = dim if dim > 0 else DEFAULT_DIMENSION

    @staticmethod
    def seed_for(text: str) -> int:
        digest = hashlib.sha256(text.lower().encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big")

    def embed(self, text: str) -> list[float]:
        _require_text(text)
        rng = np.random.default_rng(self.seed_for(text))
        raw = rng.uniform(-1.0, 1.0, self._dim)
        norm = float(np.linalg.norm(raw))
        if norm == 0.0 or not math.isfinite(norm):
            raise EmbeddingFailed("generated vector has zero norm")
        return (raw / norm).tolist()

    def dimension(self) -> int:
        return self._dim


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions). Vectors are normalized
    by the model so cosine similarity reduces to a dot product.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for LocalEmbeddingProvider. "
                "Install with: pip install vector-rules[embeddings]"
            )

        self._model_name = model_name
        LOG.info("Loading embedding model: %s", model_name)
        self._model = SentenceTransformer(model_name)
        self._dim = self._model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        _require_text(text)
        return self._encode([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            raise InvalidInput("texts cannot be empty")
        for i, text in enumerate(texts):
            try:
                _require_text(text)
            except InvalidInput as exc:
                raise EmbeddingFailed(
                    f"failed to generate embedding for text {i}: {exc}", index=i
                ) from exc
        return self._encode(texts)

    def _encode(self, texts: list[str]) -> list[list[float]]:
        try:
            embeddings = self._model.encode(
                texts, show_progress_bar=False, normalize_embeddings=True
            )
        except Exception as exc:
            raise EmbeddingFailed(f"{self._model_name} failed to encode: {exc}") from exc
        return [e.tolist() for e in embeddings]

    def dimension(self) -> int:
        return self._dim


class CachedEmbeddingProvider(EmbeddingProvider):
    """Memoizes another provider's ``embed`` results per exact text."""

    def __init__(self, inner: EmbeddingProvider, maxsize: int = 1024) -> None:
        self._inner = inner
        self._cached = functools.lru_cache(maxsize=maxsize)(self._embed_tuple)

    def _embed_tuple(self, text: str) -> tuple[float, ...]:
        return tuple(self._inner.embed(text))

    def embed(self, text: str) -> list[float]:
        _require_text(text)
        # Copy so callers can never mutate a cached vector.
        return list(self._cached(text))

    def dimension(self) -> int:
        return self._inner.dimension()

    def cache_info(self):
        return self._cached.cache_info()


def build_embedding_provider(
    backend: str = "mock",
    dimension: int = DEFAULT_DIMENSION,
    model_name: str = "all-MiniLM-L6-v2",
    cache_size: int = 0,
) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the requested type.

    Args:
        backend: "mock" or "local"
        dimension: Configured dimensionality shared with the vector index
        model_name: sentence-transformers model for the "local" backend
        cache_size: Wrap the provider in an LRU cache of this size (0 = off)

    Raises:
        ValueError: Unknown backend
        DimensionMismatch: Model width differs from the configured dimension
    """
    provider: EmbeddingProvider
    if backend == "mock":
        provider = MockEmbeddingProvider(dim=dimension)
    elif backend == "local":
        provider = LocalEmbeddingProvider(model_name=model_name)
    else:
        raise ValueError(
            f"Unknown embedding provider: {backend!r}. "
            f"Supported: 'mock', 'local'"
        )

    if provider.dimension() != dimension:
        raise DimensionMismatch(
            f"provider {backend!r} produces {provider.dimension()}-d vectors, "
            f"configured dimension is {dimension}",
            expected=dimension,
            actual=provider.dimension(),
        )

    if cache_size > 0:
        provider = CachedEmbeddingProvider(provider, maxsize=cache_size)

    LOG.info("Embedding provider: %s (dim=%d, cache=%d)", backend, dimension, cache_size)
    return provider
