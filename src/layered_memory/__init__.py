"""
Layered Memory - bounded context assembly for conversational agents

Stores every utterance as a scored, embedded memory chunk and, for each new
query, merges four memory layers (recent turns, session similarity, user
profile, critical facts) into one context under a hard token ceiling.
"""

from .config import MemoryConfig, load_config
from .context_optimizer import ContextOptimizer
from .embedding import EmbeddingProvider, SentenceTransformerEmbedder
from .entity_extractor import EntityExtractor
from .errors import (
    CollaboratorUnavailable,
    MalformedModelOutput,
    MemoryEngineError,
    PersistenceWriteError,
)
from .importance import ImportanceScorer
from .llm import ChatCompletionAdapter, CompletionProvider
from .log import setup_logging
from .memory_service import MemoryManager
from .models import (
    ContextLayer,
    Entity,
    EntityType,
    LayerName,
    MemoryChunk,
    OptimizationInput,
    OptimizedContext,
    Speaker,
    UserMemory,
)
from .retrieval import (
    CriticalRetriever,
    RecentRetriever,
    SessionSimilarityRetriever,
    UserProfileRetriever,
)
from .storage import InMemoryStore, MemoryStore, SQLiteStore
from .token_counter import TokenCounter, estimate_tokens

__all__ = [
    "MemoryConfig",
    "load_config",
    "ContextOptimizer",
    "EmbeddingProvider",
    "SentenceTransformerEmbedder",
    "EntityExtractor",
    "MemoryEngineError",
    "CollaboratorUnavailable",
    "MalformedModelOutput",
    "PersistenceWriteError",
    "ImportanceScorer",
    "CompletionProvider",
    "ChatCompletionAdapter",
    "MemoryManager",
    "ContextLayer",
    "Entity",
    "EntityType",
    "LayerName",
    "MemoryChunk",
    "OptimizationInput",
    "OptimizedContext",
    "Speaker",
    "UserMemory",
    "RecentRetriever",
    "SessionSimilarityRetriever",
    "UserProfileRetriever",
    "CriticalRetriever",
    "MemoryStore",
    "InMemoryStore",
    "SQLiteStore",
    "TokenCounter",
    "estimate_tokens",
    "setup_logging",
]
