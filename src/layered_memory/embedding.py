"""Embedding collaborator port and vector helpers.

``SentenceTransformerEmbedder`` provides vector embeddings using
sentence-transformers. The model is lazy-loaded on first use and encoding
runs in a worker thread so it never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import struct
from typing import Protocol, Sequence, runtime_checkable

import numpy as np
from loguru import logger

from .config import EmbeddingConfig


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into fixed-dimension vectors."""

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class SentenceTransformerEmbedder:
    """Embedding provider backed by a local sentence-transformers model.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding for efficiency
    - Normalized output vectors
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedder.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for SentenceTransformerEmbedder. "
                "Install with: pip install layered-memory[embeddings]"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def _encode(self, texts: list[str]) -> list[list[float]]:
        self._ensure_model()
        embeddings: np.ndarray = self._model.encode(
            texts,
            batch_size=self._config.batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        return results[0] if results else []

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


def zero_vector(dimension: int) -> list[float]:
    return [0.0] * dimension


def fit_dimension(embedding: Sequence[float] | None, dimension: int) -> list[float]:
    """Coerce *embedding* to exactly *dimension* finite floats.

    Missing or empty vectors become zero vectors, short ones are zero-padded,
    long ones truncated, and NaN/inf values replaced with 0.
    """
    if embedding is None or len(embedding) == 0:
        return zero_vector(dimension)

    arr = np.nan_to_num(
        np.asarray(embedding, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0,
    )
    if arr.shape[0] >= dimension:
        arr = arr[:dimension]
    else:
        arr = np.pad(arr, (0, dimension - arr.shape[0]))
    return arr.tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors; 0.0 on degenerate input."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm < 1e-12:
        return 0.0
    return float(np.dot(va, vb) / norm)


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Serialize embedding to bytes for SQLite BLOB storage.

    Args:
        embedding: Embedding vector as list of floats

    Returns:
        Packed bytes (little-endian float32)
    """
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    """Deserialize embedding from SQLite BLOB.

    Args:
        blob: Packed bytes from SQLite

    Returns:
        Embedding vector as list of floats
    """
    count = len(blob) // 4  # float32 = 4 bytes
    return list(struct.unpack(f"<{count}f", blob))
