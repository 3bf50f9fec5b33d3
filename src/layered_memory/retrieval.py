"""Layer retrievers.

Each retriever turns one memory source into a ``ContextLayer`` that already
fits its own token budget:

- recent: the latest turns, ranked by importance and recency
- session: chunks similar to the query (semantic + entity overlap + recency)
- user_profile: the durable profile lines relevant to the query
- critical: every chunk at or above the critical importance threshold

Layers are appended line by line and stop at the first line that would
exceed the budget.
"""

from __future__ import annotations

import asyncio
import math
import re
from datetime import datetime, timezone
from typing import Iterable, Protocol

from loguru import logger

from .config import LayerPriorities, RetrievalConfig, TimeoutConfig
from .embedding import EmbeddingProvider, fit_dimension
from .entity_extractor import EntityExtractor
from .errors import CollaboratorUnavailable
from .models import ContextLayer, Entity, LayerName, MemoryChunk, UserMemory
from .storage.base import MemoryStore
from .token_counter import estimate_tokens

_QUERY_WORD = re.compile(r"\w{3,}")


class LayerRetriever(Protocol):
    name: LayerName

    async def retrieve(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        budget: int,
    ) -> ContextLayer:
        ...


def recency_score(created_at: datetime, decay_hours: float) -> float:
    """Exponential decay ``exp(-hours / decay_hours)``; 1.0 for now or later."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    hours_ago = (datetime.now(timezone.utc) - created_at).total_seconds() / 3600.0
    return math.exp(-max(0.0, hours_ago) / decay_hours)


def build_layer(
    name: LayerName,
    entries: Iterable[tuple[str, str]],
    budget: int,
    priority: float,
) -> ContextLayer:
    """Append ``(line, source)`` entries until the next one would overflow.

    Args:
        name: Layer name
        entries: Lines in rank order, each with the source id it came from
        budget: Token budget for the whole layer
        priority: Optimizer priority to stamp on the layer

    Returns:
        The layer; ``token_count`` is the sum of the kept lines' estimates
    """
    lines: list[str] = []
    sources: list[str] = []
    used = 0

    for line, source in entries:
        cost = estimate_tokens(line)
        if used + cost > budget:
            break
        lines.append(line)
        if source not in sources:
            sources.append(source)
        used += cost

    return ContextLayer(
        name=name,
        content="\n".join(lines),
        sources=sources,
        token_count=used,
        priority=priority,
    )


# ---------------------------------------------------------------------------
# Recent turns
# ---------------------------------------------------------------------------


class RecentRetriever:
    """Latest turns of the conversation, best ``importance/recency`` first."""

    name = LayerName.RECENT

    def __init__(
        self,
        store: MemoryStore,
        config: RetrievalConfig | None = None,
        priority: float = LayerPriorities().recent,
    ):
        self._store = store
        self._config = config or RetrievalConfig()
        self._priority = priority

    def rank(self, chunks: list[MemoryChunk]) -> list[MemoryChunk]:
        cfg = self._config

        def score(chunk: MemoryChunk) -> float:
            return (
                cfg.recent_importance_weight * chunk.importance_score
                + cfg.recent_recency_weight
                * recency_score(chunk.created_at, cfg.recency_decay_hours)
            )

        return sorted(chunks, key=score, reverse=True)

    async def retrieve(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        budget: int,
    ) -> ContextLayer:
        chunks = await self._store.get_recent_chunks(
            conversation_id, limit=self._config.recent_window
        )
        ranked = self.rank(chunks)
        return build_layer(
            self.name,
            ((f"[{c.metadata.speaker.value}]: {c.content}", c.id) for c in ranked),
            budget,
            self._priority,
        )


# ---------------------------------------------------------------------------
# Session similarity
# ---------------------------------------------------------------------------


class SessionSimilarityRetriever:
    """Chunks of the conversation most similar to the query.

    Candidates come from the store's similarity search and are re-ranked by
    ``semantic_weight * similarity + entity_weight * entity_overlap +
    recency_weight * recency``. When the query cannot be embedded or the
    search fails, the conversation's chunks are ordered by importance alone.

    When *dimension* is given the query vector is padded or truncated to it,
    matching how chunk vectors were stored.
    """

    name = LayerName.SESSION

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        extractor: EntityExtractor,
        config: RetrievalConfig | None = None,
        timeouts: TimeoutConfig | None = None,
        priority: float = LayerPriorities().session,
        dimension: int | None = None,
    ):
        self._store = store
        self._embedder = embedder
        self._extractor = extractor
        self._config = config or RetrievalConfig()
        self._timeouts = timeouts or TimeoutConfig()
        self._priority = priority
        self._dimension = dimension

    async def retrieve(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        budget: int,
    ) -> ContextLayer:
        try:
            ranked = await self._search(query, conversation_id, workspace_id)
        except CollaboratorUnavailable as e:
            logger.warning(f"Session search degraded to importance ordering: {e}")
            ranked = await self._fallback(conversation_id, workspace_id)

        return build_layer(
            self.name,
            ((c.content, c.id) for c in ranked),
            budget,
            self._priority,
        )

    async def _search(
        self, query: str, conversation_id: str, workspace_id: str
    ) -> list[MemoryChunk]:
        cfg = self._config

        try:
            embedding = await asyncio.wait_for(
                self._embedder.embed(query), timeout=self._timeouts.embedding
            )
        except asyncio.TimeoutError:
            raise CollaboratorUnavailable("embedding", "timed out")
        except Exception as e:
            raise CollaboratorUnavailable("embedding", str(e)) from e
        if not embedding or not any(embedding):
            raise CollaboratorUnavailable("embedding", "empty query embedding")
        if self._dimension:
            embedding = fit_dimension(embedding, self._dimension)

        query_entities = await self._extractor.extract(query)

        try:
            candidates = await asyncio.wait_for(
                self._store.search_similar(
                    embedding,
                    conversation_id,
                    workspace_id,
                    limit=cfg.search_limit,
                    query_text=query,
                ),
                timeout=self._timeouts.search,
            )
        except asyncio.TimeoutError:
            raise CollaboratorUnavailable("search", "timed out")
        except Exception as e:
            raise CollaboratorUnavailable("search", str(e)) from e

        scored: list[tuple[float, MemoryChunk]] = []
        for candidate in candidates:
            chunk = candidate.chunk
            blended = (
                cfg.semantic_weight * candidate.score
                + cfg.entity_weight * entity_overlap(query_entities, chunk.entities)
                + cfg.recency_weight
                * recency_score(chunk.created_at, cfg.recency_decay_hours)
            )
            scored.append((blended, chunk))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        logger.debug(f"Session search ranked {len(scored)} candidates")
        return [chunk for _, chunk in scored]

    async def _fallback(
        self, conversation_id: str, workspace_id: str
    ) -> list[MemoryChunk]:
        chunks = await self._store.get_chunks_by_importance(
            conversation_id, 0.0, limit=self._config.search_limit
        )
        return [c for c in chunks if c.workspace_id == workspace_id]


def entity_overlap(query_entities: list[Entity], chunk_entities: list[Entity]) -> float:
    """Share of the query's entities that the chunk also mentions."""
    if not query_entities:
        return 0.0
    chunk_keys = {(e.canonical_form or e.text).lower() for e in chunk_entities}
    query_keys = {(e.canonical_form or e.text).lower() for e in query_entities}
    return len(query_keys & chunk_keys) / len(query_keys)


# ---------------------------------------------------------------------------
# User profile
# ---------------------------------------------------------------------------


class UserProfileRetriever:
    """Name line plus the stored preferences that the query touches."""

    name = LayerName.USER_PROFILE

    def __init__(
        self,
        store: MemoryStore,
        priority: float = LayerPriorities().user_profile,
    ):
        self._store = store
        self._priority = priority

    async def retrieve(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        budget: int,
    ) -> ContextLayer:
        profile = await self._store.get_user_memory(user_id)
        if profile is None:
            return ContextLayer(name=self.name, priority=self._priority)
        return build_layer(
            self.name, self.profile_lines(query, profile), budget, self._priority
        )

    @staticmethod
    def profile_lines(query: str, profile: UserMemory) -> list[tuple[str, str]]:
        entries: list[tuple[str, str]] = []
        if profile.name:
            entries.append((f"User's name: {profile.name}", "user_profile_name"))
        for key, value in relevant_preferences(query, profile.preferences):
            entries.append(
                (f"User preference: {key}: {value}", f"user_preference:{key}")
            )
        return entries


def relevant_preferences(query: str, preferences: dict) -> list[tuple[str, object]]:
    """Preferences whose key or value shares a word with, or appears in, *query*."""
    query_lower = query.lower()
    query_words = set(_QUERY_WORD.findall(query_lower))
    relevant: list[tuple[str, object]] = []

    for key, value in preferences.items():
        for text in (str(key), str(value)):
            lowered = text.lower().replace("_", " ")
            if (lowered and lowered in query_lower) or (
                query_words & set(_QUERY_WORD.findall(lowered))
            ):
                relevant.append((key, value))
                break

    return relevant


# ---------------------------------------------------------------------------
# Critical facts
# ---------------------------------------------------------------------------


class CriticalRetriever:
    """Chunks at or above the critical importance threshold."""

    name = LayerName.CRITICAL

    def __init__(
        self,
        store: MemoryStore,
        config: RetrievalConfig | None = None,
        priority: float = LayerPriorities().critical,
    ):
        self._store = store
        self._config = config or RetrievalConfig()
        self._priority = priority

    async def retrieve(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        budget: int,
    ) -> ContextLayer:
        chunks = await self._store.get_chunks_by_importance(
            conversation_id,
            self._config.critical_threshold,
            limit=self._config.critical_limit,
        )
        return build_layer(
            self.name,
            ((f"[Critical]: {c.content}", c.id) for c in chunks),
            budget,
            self._priority,
        )
