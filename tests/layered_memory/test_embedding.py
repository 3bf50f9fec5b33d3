"""Tests for vector helpers, the embedder wrapper and the completion adapter."""

import math

import pytest

from layered_memory.config import EmbeddingConfig
from layered_memory.embedding import (
    EmbeddingProvider,
    SentenceTransformerEmbedder,
    cosine_similarity,
    deserialize_embedding,
    fit_dimension,
    serialize_embedding,
)
from layered_memory.llm import ChatCompletionAdapter, CompletionProvider


class TestVectorHelpers:
    def test_fit_dimension(self):
        assert fit_dimension(None, 3) == [0.0, 0.0, 0.0]
        assert fit_dimension([], 2) == [0.0, 0.0]
        assert fit_dimension([1.0], 3) == [1.0, 0.0, 0.0]
        assert fit_dimension([1.0, 2.0, 3.0, 4.0], 2) == [1.0, 2.0]
        assert fit_dimension([math.nan, math.inf, -math.inf, 1.5], 4) == [0.0, 0.0, 0.0, 1.5]

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_cosine_degenerate_inputs(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([], []) == 0.0

    def test_blob_encoding(self):
        vector = [0.5, -1.25, 3.0]
        blob = serialize_embedding(vector)
        assert len(blob) == 12
        assert deserialize_embedding(blob) == vector
        assert deserialize_embedding(b"") == []


class TestSentenceTransformerEmbedder:
    def test_model_is_loaded_lazily(self):
        embedder = SentenceTransformerEmbedder(EmbeddingConfig(dimension=384))
        assert embedder._model is None
        assert embedder.dimension == 384
        assert isinstance(embedder, EmbeddingProvider)

    @pytest.mark.asyncio
    async def test_empty_batch_skips_model(self):
        embedder = SentenceTransformerEmbedder()
        assert await embedder.embed_batch([]) == []
        assert embedder._model is None


class _StreamingLLM:
    def __init__(self, chunks):
        self.chunks = chunks
        self.calls = []

    async def chat_completion(self, messages, system=None):
        self.calls.append((messages, system))
        for chunk in self.chunks:
            yield chunk


class TestChatCompletionAdapter:
    @pytest.mark.asyncio
    async def test_joins_text_and_deltas(self):
        llm = _StreamingLLM(
            ["  {\"entities\"", {"type": "text_delta", "text": ": []}"}, {"type": "ping"}]
        )
        adapter = ChatCompletionAdapter(llm, system="Extract entities.")

        assert await adapter.complete("hello") == '{"entities": []}'
        assert llm.calls == [
            ([{"role": "user", "content": "hello"}], "Extract entities.")
        ]
        assert isinstance(adapter, CompletionProvider)
