"""Memory manager - facade for layered context assembly.

Consuming applications call two operations:

- ``store_message`` turns one utterance into a persisted ``MemoryChunk``
  (entities, importance, three embeddings, metadata) and schedules a merge
  of what it reveals about the user into their durable profile.
- ``get_context_for_query`` fetches the four context layers concurrently
  and hands them to the optimizer, returning one bounded text blob.

All collaborators are injected; the defaults are built from ``MemoryConfig``.
"""

from __future__ import annotations

import asyncio
import math
import re
import uuid

from loguru import logger

from .config import MemoryConfig
from .context_optimizer import ContextOptimizer
from .embedding import (
    EmbeddingProvider,
    SentenceTransformerEmbedder,
    fit_dimension,
    zero_vector,
)
from .entity_extractor import EntityExtractor
from .errors import CollaboratorUnavailable, PersistenceWriteError
from .importance import ImportanceScorer
from .llm import CompletionProvider
from .models import (
    ChunkEmbeddings,
    ChunkMetadata,
    ChunkType,
    ContextLayer,
    CorrectionRecord,
    Entity,
    EntityType,
    LayerName,
    MemoryChunk,
    OptimizationInput,
    OptimizedContext,
    Speaker,
    UserMemoryUpdate,
)
from .retrieval import (
    CriticalRetriever,
    LayerRetriever,
    RecentRetriever,
    SessionSimilarityRetriever,
    UserProfileRetriever,
)
from .storage.base import MemoryStore
from .storage.memory_store import InMemoryStore
from .storage.sqlite_store import SQLiteStore

# ---------------------------------------------------------------------------
# Message analysis word lists
# ---------------------------------------------------------------------------
_POSITIVE_WORDS = ("good", "great", "excellent", "love", "like")
_NEGATIVE_WORDS = ("bad", "terrible", "hate", "dislike", "awful")
_CORRECTION_PHRASES = ("actually", "correction", "i meant", "no, i said", "that's wrong")
_PAST_REFERENCE_PHRASES = ("earlier", "before", "previously", "you said", "we discussed")
_PREFERENCE_PHRASES = ("i prefer", "i like", "i don't like", "i hate", "my favorite")

_FAVORITE = re.compile(r"\bmy favou?rite\s+([\w ]+?)\s+is\s+([^.!?,]+)", re.IGNORECASE)
_PREFER = re.compile(
    r"\bi prefer\s+([^.!?]+?)(?:\s+(?:over|to|rather than)\s+[^.!?]+)?(?=[.!?]|$)",
    re.IGNORECASE,
)
_LIKE = re.compile(r"\bi (?:really )?(?:like|love|enjoy)\s+([^.!?]+)", re.IGNORECASE)
_DISLIKE = re.compile(
    r"\bi (?:really )?(?:don't like|do not like|hate|dislike|avoid)\s+([^.!?]+)",
    re.IGNORECASE,
)
_NOT_BUT = re.compile(
    r"\bnot\s+([\w'-]+),?\s*(?:but|it's|i meant)\s+([^.!?]+)", re.IGNORECASE
)


def _mentions(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def classify_intent(content: str) -> str:
    if "?" in content:
        return "question"
    if "my name is" in content.lower():
        return "identity_sharing"
    return "statement"


def analyze_sentiment(content: str) -> float:
    """``(positive - negative) / max(positive + negative, 1)`` over word lists."""
    lowered = content.lower()
    positive = sum(1 for w in _POSITIVE_WORDS if _mentions(lowered, w))
    negative = sum(1 for w in _NEGATIVE_WORDS if _mentions(lowered, w))
    return (positive - negative) / max(positive + negative, 1)


def detect_corrections(content: str) -> bool:
    lowered = content.lower()
    return any(_mentions(lowered, p) for p in _CORRECTION_PHRASES)


def detect_past_references(content: str) -> bool:
    lowered = content.lower()
    return any(_mentions(lowered, p) for p in _PAST_REFERENCE_PHRASES)


def is_preference(content: str) -> bool:
    lowered = content.lower()
    return any(p in lowered for p in _PREFERENCE_PHRASES)


def classify_chunk_type(
    content: str, speaker: Speaker, has_corrections: bool
) -> ChunkType:
    if has_corrections:
        return ChunkType.CORRECTION
    if is_preference(content):
        return ChunkType.PREFERENCE
    if speaker == Speaker.USER:
        return ChunkType.USER_MESSAGE
    if speaker == Speaker.ASSISTANT:
        return ChunkType.ASSISTANT_MESSAGE
    return ChunkType.SYSTEM_INFO


def extract_preferences(content: str) -> dict[str, str]:
    """Key/value preferences stated in *content*.

    "My favorite color is blue" gives ``{"color": "blue"}``; "I prefer tea
    over coffee" gives ``{"prefers": "tea"}``; like/love/enjoy statements
    give ``"likes"`` and dislike/hate/avoid statements give ``"dislikes"``.
    Later statements in the same message overwrite earlier ones.
    """
    preferences: dict[str, str] = {}

    for match in _FAVORITE.finditer(content):
        key = "_".join(match.group(1).lower().split())
        preferences[key] = match.group(2).strip()
    for match in _PREFER.finditer(content):
        preferences["prefers"] = match.group(1).strip()
    for match in _LIKE.finditer(content):
        preferences["likes"] = match.group(1).strip()
    for match in _DISLIKE.finditer(content):
        preferences["dislikes"] = match.group(1).strip()

    return {k: v for k, v in preferences.items() if k and v}


def extract_topic_tags(entities: list[Entity]) -> list[str]:
    tags: list[str] = []
    for entity in entities:
        if entity.type in (EntityType.PRODUCT, EntityType.PROJECT, EntityType.ORG):
            tag = (entity.canonical_form or entity.text).lower()
            if tag not in tags:
                tags.append(tag)
    return tags


class MemoryManager:
    """Main layered memory facade.

    Owns no conversation state: every call reads what it needs from the
    store. Profile merges triggered by ``store_message`` run as background
    tasks; ``drain()`` waits for them.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        store: MemoryStore | None = None,
        embedder: EmbeddingProvider | None = None,
        completion: CompletionProvider | None = None,
    ):
        """Initialize memory manager.

        Args:
            config: Memory configuration (uses defaults if not provided)
            store: Chunk/profile store (built from ``config.storage`` if omitted)
            embedder: Embedding collaborator (sentence-transformers if omitted)
            completion: Optional completion collaborator for the model-assisted
                entity pass
        """
        self.config = config or MemoryConfig()
        cfg = self.config

        self._store = store or self._build_store()
        self._store_initialized = False
        self._embedder = embedder or SentenceTransformerEmbedder(cfg.embedding)
        self._dimension = cfg.embedding.dimension

        self._extractor = EntityExtractor(
            config=cfg.extraction,
            completion=completion,
            timeout=cfg.timeouts.completion,
        )
        self._scorer = ImportanceScorer(store=self._store, config=cfg.scoring)
        self._optimizer = ContextOptimizer(
            buffer_ratio=cfg.context.budget_allocation.buffer,
            deduplicate_lines=cfg.context.deduplicate_lines,
        )

        priorities = cfg.context.priorities
        self._retrievers: list[LayerRetriever] = [
            RecentRetriever(self._store, cfg.retrieval, priority=priorities.recent),
            SessionSimilarityRetriever(
                self._store,
                self._embedder,
                self._extractor,
                cfg.retrieval,
                cfg.timeouts,
                priority=priorities.session,
                dimension=self._dimension,
            ),
            UserProfileRetriever(self._store, priority=priorities.user_profile),
            CriticalRetriever(self._store, cfg.retrieval, priority=priorities.critical),
        ]

        self._pending: set[asyncio.Task] = set()

        logger.debug(f"MemoryManager full config: {cfg.model_dump()}")
        logger.info(
            f"MemoryManager initialized: store={type(self._store).__name__}, "
            f"window={cfg.context.window_tokens}, dimension={self._dimension}"
        )

    def _build_store(self) -> MemoryStore:
        storage = self.config.storage
        if storage.backend == "memory":
            return InMemoryStore()
        if storage.backend == "sqlite":
            return SQLiteStore(db_path=storage.sqlite_db_path)
        raise ValueError(f"Unknown storage backend: {storage.backend!r}")

    async def _ensure_store(self) -> MemoryStore:
        """Lazy initialization of the store."""
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
            logger.debug(f"{type(self._store).__name__} initialized")
        return self._store

    @property
    def extractor(self) -> EntityExtractor:
        return self._extractor

    @property
    def scorer(self) -> ImportanceScorer:
        return self._scorer

    @property
    def optimizer(self) -> ContextOptimizer:
        return self._optimizer

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    def layer_budgets(self) -> dict[LayerName, int]:
        """Token budget of each layer; the buffer share is never allocated."""
        window = self.config.context.window_tokens
        allocation = self.config.context.budget_allocation
        return {
            LayerName.RECENT: math.floor(window * allocation.recent),
            LayerName.SESSION: math.floor(window * allocation.session),
            LayerName.USER_PROFILE: math.floor(window * allocation.user_profile),
            LayerName.CRITICAL: math.floor(window * allocation.critical),
        }

    async def get_context_for_query(
        self,
        query: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
    ) -> OptimizedContext:
        """Build the bounded context for a new user query.

        Args:
            query: The new user utterance
            conversation_id: Conversation scope
            user_id: Owner of the durable profile
            workspace_id: Workspace scope for similarity search

        Returns:
            Merged context; layers that failed to load are simply absent
        """
        try:
            await self._ensure_store()
        except Exception as e:
            logger.error(f"Store unavailable, returning empty context: {e}")
            return OptimizedContext(optimizations=[f"Store unavailable: {e}"])

        budgets = self.layer_budgets()
        results = await asyncio.gather(
            *(
                retriever.retrieve(
                    query, conversation_id, user_id, workspace_id,
                    budgets[retriever.name],
                )
                for retriever in self._retrievers
            ),
            return_exceptions=True,
        )

        layers: dict[LayerName, ContextLayer] = {}
        for retriever, result in zip(self._retrievers, results):
            if isinstance(result, BaseException):
                logger.warning(
                    f"{retriever.name.value} layer failed, using empty layer: {result}"
                )
                layers[retriever.name] = ContextLayer(name=retriever.name)
            else:
                layers[retriever.name] = result

        context = self._optimizer.optimize(
            OptimizationInput(
                recent=layers[LayerName.RECENT],
                session=layers[LayerName.SESSION],
                user_profile=layers[LayerName.USER_PROFILE],
                critical=layers[LayerName.CRITICAL],
                total_budget=self.config.context.window_tokens,
            )
        )

        logger.info(
            f"Context assembled: {context.token_count} tokens "
            f"from {len(context.sources)} sources"
        )
        return context

    # ------------------------------------------------------------------
    # Message storage
    # ------------------------------------------------------------------

    async def store_message(
        self,
        content: str,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        speaker: Speaker | str,
        turn_number: int,
    ) -> MemoryChunk:
        """Analyze, embed and persist one utterance.

        Args:
            content: Message text
            conversation_id: Conversation the message belongs to
            user_id: User the conversation belongs to
            workspace_id: Workspace scope
            speaker: "user", "assistant" or "system"
            turn_number: Position of the message in the conversation

        Returns:
            The persisted chunk

        Raises:
            PersistenceWriteError: If the store rejects the write
        """
        speaker = Speaker(speaker)
        store = await self._ensure_store()

        entities = await self._extractor.extract(content)
        importance = await self._scorer.score(content, entities, conversation_id, user_id)

        intent = classify_intent(content)
        entity_text = " ".join(e.text for e in entities)
        semantic, entity_vector, intent_vector = await asyncio.gather(
            self._embed(content, "semantic"),
            self._embed(entity_text, "entity") if entity_text else self._zero(),
            self._embed(intent, "intent"),
        )

        has_corrections = detect_corrections(content) or any(
            e.type == EntityType.CORRECTION for e in entities
        )

        chunk = MemoryChunk(
            id=self._new_chunk_id(conversation_id, turn_number),
            content=content,
            conversation_id=conversation_id,
            user_id=user_id,
            workspace_id=workspace_id,
            chunk_type=classify_chunk_type(content, speaker, has_corrections),
            importance_score=importance,
            entities=entities,
            embeddings=ChunkEmbeddings(
                semantic=fit_dimension(semantic, self._dimension),
                entity=fit_dimension(entity_vector, self._dimension),
                intent=fit_dimension(intent_vector, self._dimension),
            ),
            metadata=ChunkMetadata(
                turn_number=turn_number,
                speaker=speaker,
                intent=intent,
                sentiment=analyze_sentiment(content),
                has_corrections=has_corrections,
                references_past=detect_past_references(content),
                topic_tags=extract_topic_tags(entities),
            ),
        )

        try:
            await store.insert_chunk(chunk)
        except Exception as e:
            logger.error(f"Failed to store memory chunk {chunk.id}: {e}")
            raise PersistenceWriteError(chunk.id, str(e)) from e

        if speaker == Speaker.USER:
            self._schedule_profile_update(chunk)

        logger.info(
            f"Stored chunk {chunk.id} ({chunk.chunk_type.value}) with importance "
            f"{importance:.2f}, {len(entities)} entities"
        )
        return chunk

    @staticmethod
    def _new_chunk_id(conversation_id: str, turn_number: int) -> str:
        return f"{conversation_id}_{turn_number}_{uuid.uuid4().hex[:12]}"

    async def _zero(self) -> list[float]:
        return zero_vector(self._dimension)

    async def _embed(self, text: str, label: str) -> list[float]:
        """Embed *text*, falling back to a zero vector on any failure."""
        try:
            return await self._call_embedder(text)
        except CollaboratorUnavailable as e:
            logger.warning(f"{label.capitalize()} embedding failed, using zero vector: {e}")
            return zero_vector(self._dimension)

    async def _call_embedder(self, text: str) -> list[float]:
        try:
            return await asyncio.wait_for(
                self._embedder.embed(text), timeout=self.config.timeouts.embedding
            )
        except asyncio.TimeoutError:
            raise CollaboratorUnavailable(
                "embedding", f"timed out after {self.config.timeouts.embedding}s"
            )
        except Exception as e:
            raise CollaboratorUnavailable("embedding", str(e)) from e

    # ------------------------------------------------------------------
    # User profile
    # ------------------------------------------------------------------

    def build_profile_update(self, chunk: MemoryChunk) -> UserMemoryUpdate:
        """Derive the profile changes revealed by a user message."""
        content = chunk.content
        entities = chunk.entities

        def first(entity_type: EntityType) -> Entity | None:
            return next((e for e in entities if e.type == entity_type), None)

        name = self._extractor.find_introduced_name(content)
        if not name:
            person = next(
                (e for e in entities if e.type == EntityType.PERSON and e.confidence >= 0.8),
                None,
            )
            name = (person.canonical_form or person.text) if person else None

        email = first(EntityType.EMAIL)
        phone = first(EntityType.PHONE)
        org = first(EntityType.ORG)
        preferences = extract_preferences(content)

        projects: list[str] = []
        for entity in entities:
            if entity.type in (EntityType.PROJECT, EntityType.PRODUCT):
                value = entity.canonical_form or entity.text
                if value not in projects:
                    projects.append(value)

        corrections: list[CorrectionRecord] = []
        if chunk.metadata.has_corrections:
            corrections.append(self._correction_record(content, entities))

        return UserMemoryUpdate(
            name=name,
            email=(email.canonical_form or email.text) if email else None,
            phone=phone.text if phone else None,
            preferences=preferences,
            work_domain=(org.canonical_form or org.text) if org else None,
            projects=projects,
            interests=[preferences["likes"]] if "likes" in preferences else [],
            corrections=corrections,
        )

    @staticmethod
    def _correction_record(content: str, entities: list[Entity]) -> CorrectionRecord:
        match = _NOT_BUT.search(content)
        if match:
            return CorrectionRecord(
                old_value=match.group(1).strip(),
                new_value=match.group(2).strip(),
                context=content,
            )
        correction = next((e for e in entities if e.type == EntityType.CORRECTION), None)
        return CorrectionRecord(
            new_value=correction.text if correction else content,
            context=content,
        )

    def _schedule_profile_update(self, chunk: MemoryChunk) -> None:
        task = asyncio.create_task(self._update_profile(chunk))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _update_profile(self, chunk: MemoryChunk) -> None:
        try:
            update = self.build_profile_update(chunk)
            await self._store.merge_user_memory(chunk.user_id, chunk.workspace_id, update)
            logger.debug(f"User memory updated for {chunk.user_id} from {chunk.id}")
        except Exception as e:
            logger.warning(f"User memory update failed for {chunk.user_id}: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for all scheduled profile updates to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Drain pending work and close the store."""
        await self.drain()
        await self._store.close()
        self._store_initialized = False
        logger.info("MemoryManager closed")
