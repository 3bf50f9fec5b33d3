"""Tests for the four layer retrievers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from layered_memory.config import ExtractionConfig
from layered_memory.entity_extractor import EntityExtractor
from layered_memory.embedding import fit_dimension
from layered_memory.models import (
    Entity,
    EntityType,
    LayerName,
    Speaker,
    UserMemoryUpdate,
)
from layered_memory.retrieval import (
    CriticalRetriever,
    RecentRetriever,
    SessionSimilarityRetriever,
    UserProfileRetriever,
    build_layer,
    entity_overlap,
    recency_score,
    relevant_preferences,
)
from layered_memory.token_counter import estimate_tokens as estimate

@pytest.fixture
def extractor() -> EntityExtractor:
    return EntityExtractor(ExtractionConfig(llm_enabled=False))

async def _retrieve(retriever, budget: int = 1000, query: str = "anything"):
    return await retriever.retrieve(query, "conv-1", "user-1", "ws-1", budget)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_recency_decays(self):
        now = datetime.now(timezone.utc)
        assert recency_score(now + timedelta(minutes=5), 24.0) == pytest.approx(1.0)
        assert recency_score(now - timedelta(hours=24), 24.0) == pytest.approx(
            0.3679, abs=1e-3
        )

    def test_naive_timestamps_are_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None)
        assert recency_score(naive, 24.0) == pytest.approx(1.0, abs=1e-3)

    def test_build_layer_stops_at_first_overflow(self):
        layer = build_layer(
            LayerName.RECENT,
            [("aaaa", "1"), ("b" * 40, "2"), ("c", "3")],
            budget=5,
            priority=0.7,
        )
        assert layer.content == "aaaa"
        assert layer.sources == ["1"]
        assert layer.token_count == 1

    def test_entity_overlap(self):
        alice = Entity(text="Alice", type=EntityType.PERSON, confidence=0.9)
        acme = Entity(text="Acme", type=EntityType.ORG, confidence=0.9)
        assert entity_overlap([], [alice]) == 0.0
        assert entity_overlap([alice, acme], [alice]) == 0.5

    def test_relevant_preferences(self):
        prefs = {"favorite_color": "blue", "food": "sushi", "likes": "hiking"}
        assert relevant_preferences("What color is the sky?", prefs) == [
            ("favorite_color", "blue")
        ]
        assert relevant_preferences("any sushi places nearby", prefs) == [
            ("food", "sushi")
        ]

# ---------------------------------------------------------------------------
# Recent
# ---------------------------------------------------------------------------

class TestRecentRetriever:
    @pytest.mark.asyncio
    async def test_ranked_by_importance_and_recency(self, memory_store, chunk_factory):
        now = datetime.now(timezone.utc)
        old_important = chunk_factory(
            "I work at Acme Corp", importance=0.9, created_at=now - timedelta(hours=2)
        )
        new_trivial = chunk_factory(
            "ok", importance=0.2, speaker=Speaker.ASSISTANT, created_at=now
        )
        await memory_store.insert_chunk(old_important)
        await memory_store.insert_chunk(new_trivial)

        layer = await _retrieve(RecentRetriever(memory_store))

        assert layer.name == LayerName.RECENT
        assert layer.content == "[user]: I work at Acme Corp\n[assistant]: ok"
        assert layer.sources == [old_important.id, new_trivial.id]
        assert layer.token_count == estimate("[user]: I work at Acme Corp") + estimate(
            "[assistant]: ok"
        )
        assert layer.priority == 0.7

    @pytest.mark.asyncio
    async def test_budget_stops_at_first_overflowing_line(
        self, memory_store, chunk_factory
    ):
        await memory_store.insert_chunk(chunk_factory("a" * 8, importance=0.9))
        await memory_store.insert_chunk(chunk_factory("long " * 20, importance=0.8))
        await memory_store.insert_chunk(chunk_factory("b", importance=0.1))

        layer = await _retrieve(RecentRetriever(memory_store), budget=7)

        assert layer.content == "[user]: " + "a" * 8
        assert layer.token_count == 4

    @pytest.mark.asyncio
    async def test_empty_conversation(self, memory_store):
        layer = await _retrieve(RecentRetriever(memory_store))
        assert layer.is_empty
        assert layer.sources == []

# ---------------------------------------------------------------------------
# Critical
# ---------------------------------------------------------------------------

class TestCriticalRetriever:
    @pytest.mark.asyncio
    async def test_threshold_and_order(self, memory_store, chunk_factory):
        for content, importance in [
            ("medium fact", 0.5),
            ("edge fact", 0.8),
            ("top fact", 0.95),
            ("high fact", 0.85),
        ]:
            await memory_store.insert_chunk(chunk_factory(content, importance=importance))

        layer = await _retrieve(CriticalRetriever(memory_store))

        assert layer.content.split("\n") == [
            "[Critical]: top fact",
            "[Critical]: high fact",
            "[Critical]: edge fact",
        ]
        assert layer.priority == 0.9

    @pytest.mark.asyncio
    async def test_nothing_critical(self, memory_store, chunk_factory):
        await memory_store.insert_chunk(chunk_factory("meh", importance=0.4))
        layer = await _retrieve(CriticalRetriever(memory_store))
        assert layer.is_empty

# ---------------------------------------------------------------------------
# User profile
# ---------------------------------------------------------------------------

class TestUserProfileRetriever:
    @pytest.mark.asyncio
    async def test_no_profile(self, memory_store):
        layer = await _retrieve(UserProfileRetriever(memory_store))
        assert layer.is_empty
        assert layer.name == LayerName.USER_PROFILE

    @pytest.mark.asyncio
    async def test_name_and_relevant_preferences(self, memory_store):
        await memory_store.merge_user_memory(
            "user-1",
            "ws-1",
            UserMemoryUpdate(name="Alice", preferences={"color": "blue", "food": "sushi"}),
        )

        layer = await _retrieve(
            UserProfileRetriever(memory_store), query="what color should I paint the room"
        )

        assert layer.content == "User's name: Alice\nUser preference: color: blue"
        assert layer.sources == ["user_profile_name", "user_preference:color"]

# ---------------------------------------------------------------------------
# Session similarity
# ---------------------------------------------------------------------------

@pytest.fixture
async def seeded_store(memory_store, chunk_factory, fake_embedder):
    """Two ws-1 chunks and one ws-2 duplicate, embedded with the fake embedder."""
    for content, importance, workspace in [
        ("weather sunny today", 0.9, "ws-1"),
        ("python deadline friday", 0.3, "ws-1"),
        ("python deadline friday", 0.95, "ws-2"),
    ]:
        await memory_store.insert_chunk(
            chunk_factory(
                content,
                chunk_id=f"{workspace}-{content.split()[0]}",
                importance=importance,
                workspace_id=workspace,
                semantic=await fake_embedder.embed(content),
            )
        )
    return memory_store


class TestSessionSimilarityRetriever:
    @pytest.mark.asyncio
    async def test_most_similar_first(self, seeded_store, fake_embedder, extractor):
        retriever = SessionSimilarityRetriever(seeded_store, fake_embedder, extractor)

        layer = await _retrieve(retriever, query="python deadline friday")

        assert layer.content.split("\n")[0] == "python deadline friday"
        assert layer.sources[0] == "ws-1-python"
        assert "ws-2-python" not in layer.sources
        assert layer.priority == 0.8

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_importance(
        self, seeded_store, failing_embedder, extractor
    ):
        retriever = SessionSimilarityRetriever(seeded_store, failing_embedder, extractor)

        layer = await _retrieve(retriever, query="python deadline friday")

        assert layer.sources == ["ws-1-weather", "ws-1-python"]

    @pytest.mark.asyncio
    async def test_search_failure_falls_back_to_importance(
        self, seeded_store, fake_embedder, extractor, monkeypatch
    ):
        monkeypatch.setattr(
            seeded_store,
            "search_similar",
            AsyncMock(side_effect=RuntimeError("index offline")),
        )
        retriever = SessionSimilarityRetriever(seeded_store, fake_embedder, extractor)

        layer = await _retrieve(retriever, query="python deadline friday")

        assert layer.sources == ["ws-1-weather", "ws-1-python"]

    @pytest.mark.asyncio
    async def test_zero_budget(self, seeded_store, fake_embedder, extractor):
        retriever = SessionSimilarityRetriever(seeded_store, fake_embedder, extractor)
        layer = await _retrieve(retriever, budget=0, query="python")
        assert layer.is_empty

    @pytest.mark.asyncio
    async def test_query_vector_fitted_to_stored_dimension(
        self, memory_store, chunk_factory, fake_embedder, extractor
    ):
        stored = fit_dimension(await fake_embedder.embed("whale ocean swim"), 16)
        await memory_store.insert_chunk(
            chunk_factory(
                "notes from the marine trip",
                chunk_id="whale",
                importance=0.2,
                created_at=datetime.now(timezone.utc) - timedelta(hours=2),
                semantic=stored,
            )
        )
        await memory_store.insert_chunk(
            chunk_factory("tax forms due", chunk_id="tax", importance=0.9, semantic=[0.0] * 16)
        )
        retriever = SessionSimilarityRetriever(
            memory_store, fake_embedder, extractor, dimension=16
        )

        layer = await _retrieve(retriever, query="whale ocean swim")

        assert layer.sources[0] == "whale"
