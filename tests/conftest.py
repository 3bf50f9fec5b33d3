"""
Layered Memory Test Fixtures
Shared fixtures, fake collaborators and chunk factories.
"""
import os
import re
import tempfile
from datetime import datetime

import pytest
from unittest.mock import AsyncMock

from layered_memory.config import MemoryConfig
from layered_memory.models import (
    ChunkEmbeddings,
    ChunkMetadata,
    ChunkType,
    Entity,
    MemoryChunk,
    Speaker,
)
from layered_memory.storage.memory_store import InMemoryStore
from layered_memory.storage.sqlite_store import SQLiteStore

TEST_DIMENSION = 8


class FakeEmbedder:
    """Deterministic bag-of-words embedder: each word bumps one bucket."""

    def __init__(self, dimension: int = TEST_DIMENSION):
        self._dimension = dimension
        self.calls: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self._dimension
        for word in re.findall(r"\w+", text.lower()):
            vector[sum(ord(c) for c in word) % self._dimension] += 1.0
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def failing_embedder():
    """Embedding collaborator that fails on every call."""
    mock = AsyncMock()
    mock.dimension = TEST_DIMENSION
    mock.embed.side_effect = RuntimeError("embedding service down")
    mock.embed_batch.side_effect = RuntimeError("embedding service down")
    return mock


@pytest.fixture
def config():
    """MemoryConfig with an in-memory store, small vectors and no model pass."""
    return MemoryConfig(
        storage={"backend": "memory"},
        embedding={"dimension": TEST_DIMENSION},
        extraction={"llm_enabled": False},
    )


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
async def sqlite_store():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        store = SQLiteStore(db_path=db_path)
        await store.initialize()
        yield store
        await store.close()


def make_chunk(
    content: str,
    chunk_id: str | None = None,
    conversation_id: str = "conv-1",
    workspace_id: str = "ws-1",
    user_id: str = "user-1",
    importance: float = 0.5,
    speaker: Speaker = Speaker.USER,
    created_at: datetime | None = None,
    semantic: list[float] | None = None,
    entities: list[Entity] | None = None,
) -> MemoryChunk:
    """Build a chunk with zero entity/intent vectors of the test dimension."""
    zero = [0.0] * TEST_DIMENSION
    kwargs = {}
    if chunk_id:
        kwargs["id"] = chunk_id
    if created_at:
        kwargs["created_at"] = created_at
    return MemoryChunk(
        content=content,
        conversation_id=conversation_id,
        user_id=user_id,
        workspace_id=workspace_id,
        chunk_type=ChunkType.USER_MESSAGE
        if speaker == Speaker.USER
        else ChunkType.ASSISTANT_MESSAGE,
        importance_score=importance,
        entities=entities or [],
        embeddings=ChunkEmbeddings(
            semantic=semantic or list(zero), entity=list(zero), intent=list(zero)
        ),
        metadata=ChunkMetadata(turn_number=1, speaker=speaker),
        **kwargs,
    )


@pytest.fixture
def chunk_factory():
    return make_chunk
