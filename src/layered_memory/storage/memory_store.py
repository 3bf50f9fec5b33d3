"""Process-local store for tests and ephemeral sessions."""

from __future__ import annotations

import asyncio
import re

from loguru import logger

from ..embedding import cosine_similarity
from ..models import MemoryChunk, ScoredChunk, UserMemory, UserMemoryUpdate
from .sqlite_store import TEXT_SIGNAL_WEIGHT

_WORD = re.compile(r"\w+")


def _text_overlap(query: str, content: str) -> float:
    """Share of distinct query words that appear in *content*."""
    query_words = set(_WORD.findall(query.lower()))
    if not query_words:
        return 0.0
    content_words = set(_WORD.findall(content.lower()))
    return len(query_words & content_words) / len(query_words)


class InMemoryStore:
    """``MemoryStore`` kept in dictionaries guarded by one ``asyncio.Lock``."""

    def __init__(self):
        self._chunks: dict[str, list[MemoryChunk]] = {}
        self._users: dict[str, UserMemory] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def insert_chunk(self, chunk: MemoryChunk) -> str:
        async with self._lock:
            self._chunks.setdefault(chunk.conversation_id, []).append(chunk)
        logger.debug(f"Memory chunk stored in memory: {chunk.id}")
        return chunk.id

    async def get_recent_chunks(
        self, conversation_id: str, limit: int = 50
    ) -> list[MemoryChunk]:
        async with self._lock:
            chunks = list(self._chunks.get(conversation_id, []))
        # Insertion order breaks created_at ties
        ordered = sorted(
            enumerate(chunks), key=lambda p: (p[1].created_at, p[0]), reverse=True
        )
        return [c for _, c in ordered][:limit]

    async def get_chunks_by_importance(
        self,
        conversation_id: str,
        min_importance: float = 0.0,
        limit: int = 50,
    ) -> list[MemoryChunk]:
        async with self._lock:
            chunks = [
                c for c in self._chunks.get(conversation_id, [])
                if c.importance_score >= min_importance
            ]
        chunks.sort(key=lambda c: (c.importance_score, c.created_at), reverse=True)
        return chunks[:limit]

    async def search_similar(
        self,
        embedding: list[float],
        conversation_id: str,
        workspace_id: str,
        limit: int = 20,
        query_text: str | None = None,
    ) -> list[ScoredChunk]:
        async with self._lock:
            chunks = [
                c for c in self._chunks.get(conversation_id, [])
                if c.workspace_id == workspace_id
            ]

        results: list[ScoredChunk] = []
        for chunk in chunks:
            semantic = max(0.0, cosine_similarity(embedding, chunk.embeddings.semantic))
            text = _text_overlap(query_text, chunk.content) if query_text else 0.0
            score = semantic
            if text > 0:
                score = min(1.0, semantic + TEXT_SIGNAL_WEIGHT * text)
            results.append(
                ScoredChunk(
                    chunk=chunk, score=score, signals={"semantic": semantic, "text": text}
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def get_user_memory(self, user_id: str) -> UserMemory | None:
        async with self._lock:
            memory = self._users.get(user_id)
        return memory.model_copy(deep=True) if memory else None

    async def merge_user_memory(
        self, user_id: str, workspace_id: str, update: UserMemoryUpdate
    ) -> UserMemory:
        async with self._lock:
            current = self._users.get(user_id)
            if current is None:
                current = UserMemory(user_id=user_id, workspace_id=workspace_id)
            merged = update.apply_to(current)
            self._users[user_id] = merged
        return merged.model_copy(deep=True)
